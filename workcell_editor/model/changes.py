"""Reversible change records and the proposed-state overlay they are built on.

An edit is planned against a ``ProposedWorkcell`` (an overlay over the live
tables), validated there, and only then frozen into a ``ChangeSet``. Each
``Change`` keeps the entity value before and after, which is exactly the
prior state needed to reverse it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from workcell_editor.model.entities import Entity, EntityId, EntityKind, kind_of
from workcell_editor.model.workcell import Workcell, WorkcellView

logger = logging.getLogger(__name__)

_DELETED = object()


@dataclass(frozen=True)
class Change:
    """Replacement of one table entry. ``None`` means absent."""

    kind: EntityKind
    entity_id: EntityId
    before: Entity | None
    after: Entity | None

    def inverted(self) -> Change:
        return Change(self.kind, self.entity_id, self.after, self.before)


@dataclass(frozen=True)
class ChangeSet:
    """An atomic, reversible edit.

    Attributes:
        label: Short human-readable description ("Create joint 7").
        changes: Entry replacements in application order.
    """

    label: str
    changes: tuple[Change, ...]

    def inverted(self) -> ChangeSet:
        return ChangeSet(self.label, tuple(c.inverted() for c in reversed(self.changes)))

    def touched(self) -> set[tuple[EntityKind, EntityId]]:
        return {(c.kind, c.entity_id) for c in self.changes}

    def created(self) -> list[EntityId]:
        return [c.entity_id for c in self.changes if c.before is None and c.after is not None]

    def removed(self) -> list[EntityId]:
        return [c.entity_id for c in self.changes if c.before is not None and c.after is None]

    def __bool__(self) -> bool:
        return bool(self.changes)

    def apply_to(self, workcell: Workcell) -> None:
        """Commit every change. Callers validate first; this never fails."""
        for change in self.changes:
            workcell._store(change.kind, change.entity_id, change.after)
        logger.debug("Applied '%s' (%d changes)", self.label, len(self.changes))


class _OverlayTable(Mapping):
    """Read-through mapping of base entries patched by overlay entries."""

    def __init__(self, base: Mapping[EntityId, Entity], patch: dict[EntityId, object]) -> None:
        self._base = base
        self._patch = patch

    def __getitem__(self, key: EntityId) -> Entity:
        if key in self._patch:
            value = self._patch[key]
            if value is _DELETED:
                raise KeyError(key)
            return value  # type: ignore[return-value]
        return self._base[key]

    def __iter__(self):
        for key in self._base:
            if key not in self._patch:
                yield key
        for key, value in self._patch.items():
            if value is not _DELETED:
                yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)


class ProposedWorkcell(WorkcellView):
    """Unvalidated future state of a workcell.

    Writes land in an overlay; the base workcell is never touched. Once the
    integrity checks pass, ``to_changeset`` produces the reversible record.
    """

    def __init__(self, base: WorkcellView) -> None:
        self.base = base
        self.metadata = base.metadata
        self._patches: dict[EntityKind, dict[EntityId, object]] = {kind: {} for kind in EntityKind}
        # Insertion-ordered set of touched entries
        self._order: dict[tuple[EntityKind, EntityId], None] = {}

    def entities(self, kind: EntityKind) -> Mapping[EntityId, Entity]:
        return _OverlayTable(self.base.entities(kind), self._patches[kind])

    def put(self, entity_id: EntityId, entity: Entity) -> None:
        kind = kind_of(entity)
        self._touch(kind, entity_id)
        self._patches[kind][entity_id] = entity

    def delete(self, kind: EntityKind, entity_id: EntityId) -> None:
        self._touch(kind, entity_id)
        self._patches[kind][entity_id] = _DELETED

    def _touch(self, kind: EntityKind, entity_id: EntityId) -> None:
        self._order.setdefault((kind, entity_id), None)

    def touched(self) -> list[tuple[EntityKind, EntityId]]:
        return list(self._order)

    def to_changeset(self, label: str) -> ChangeSet:
        """Freeze the overlay into a ChangeSet, dropping no-op entries."""
        changes: list[Change] = []
        for kind, entity_id in self._order:
            before = self.base.get(kind, entity_id)
            after = self.get(kind, entity_id)
            if before != after:
                changes.append(Change(kind, entity_id, before, after))
        return ChangeSet(label, tuple(changes))
