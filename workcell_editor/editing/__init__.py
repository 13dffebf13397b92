"""Editing layer: the validated editor facade and its undo/redo journal."""

from .editor import EditResult, WorkcellEditor
from .journal import Journal

__all__ = ["EditResult", "Journal", "WorkcellEditor"]
