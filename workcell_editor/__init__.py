"""Workcell editor core: anchors, links, joints and model instances of a robot cell.

Edits go through ``WorkcellEditor``; documents are read and written by the
``io`` package; ``jobs`` runs imports and exports in the background.
"""

__version__ = "0.1.0"
