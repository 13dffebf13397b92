"""Change journal: undo/redo over recorded change sets.

Undo and redo replay records through the same integrity validation used by
forward edits. A record whose preconditions were invalidated is never forced
through; the unreachable part of the history is discarded instead.
"""

from __future__ import annotations

import logging
from collections import deque

from workcell_editor.errors import UndoPreconditionError, WorkcellError
from workcell_editor.model.changes import ChangeSet
from workcell_editor.model.integrity import validate_changeset
from workcell_editor.model.workcell import Workcell

logger = logging.getLogger(__name__)


class Journal:
    """Bounded undo/redo history.

    Args:
        max_depth: Maximum number of undoable records; the oldest are dropped.
    """

    def __init__(self, max_depth: int = 200) -> None:
        self._undo: deque[ChangeSet] = deque(maxlen=max_depth)
        self._redo: list[ChangeSet] = []

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_labels(self) -> list[str]:
        """Labels of undoable records, most recent first."""
        return [cs.label for cs in reversed(self._undo)]

    @property
    def redo_labels(self) -> list[str]:
        return [cs.label for cs in reversed(self._redo)]

    def record(self, changeset: ChangeSet) -> None:
        """Record a forward edit. Diverging from the timeline drops redo history."""
        if not changeset:
            return
        self._undo.append(changeset)
        if self._redo:
            logger.debug("Dropping %d redo record(s) after new edit", len(self._redo))
            self._redo.clear()

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def undo(self, workcell: Workcell) -> ChangeSet | None:
        """Reverse the most recent record.

        Returns:
            The applied inverse change set, or None when there is nothing to undo.

        Raises:
            UndoPreconditionError: If intervening state makes the record
                inapplicable. The failing record and all older records are
                discarded; the redo stack is kept.
        """
        if not self._undo:
            return None
        record = self._undo[-1]
        inverse = record.inverted()
        try:
            validate_changeset(workcell, inverse)
        except WorkcellError as exc:
            dropped = len(self._undo)
            self._undo.clear()
            logger.warning("Undo of '%s' failed, discarded %d record(s): %s",
                           record.label, dropped, exc)
            raise _as_precondition_error("undo", record, exc) from exc

        inverse.apply_to(workcell)
        self._undo.pop()
        self._redo.append(record)
        logger.debug("Undid '%s'", record.label)
        return inverse

    def redo(self, workcell: Workcell) -> ChangeSet | None:
        """Re-apply the most recently undone record.

        Raises:
            UndoPreconditionError: If the record no longer applies. The redo
                stack is discarded.
        """
        if not self._redo:
            return None
        record = self._redo[-1]
        try:
            validate_changeset(workcell, record)
        except WorkcellError as exc:
            dropped = len(self._redo)
            self._redo.clear()
            logger.warning("Redo of '%s' failed, discarded %d record(s): %s",
                           record.label, dropped, exc)
            raise _as_precondition_error("redo", record, exc) from exc

        record.apply_to(workcell)
        self._redo.pop()
        self._undo.append(record)
        logger.debug("Redid '%s'", record.label)
        return record


def _as_precondition_error(
    action: str,
    record: ChangeSet,
    exc: WorkcellError,
) -> UndoPreconditionError:
    if isinstance(exc, UndoPreconditionError):
        return exc
    return UndoPreconditionError(
        f"Cannot {action} '{record.label}': {exc.message}",
        entity=exc.entity,
    )
