"""Integrity engine: keeps a workcell internally consistent under edits.

Every mutation is planned against a ``ProposedWorkcell`` and checked here
before anything is committed. Checks run in a fixed order:

    1. existence   -- every referenced id exists       (DanglingReferenceError)
    2. acyclicity  -- one parent per link, no cycles    (CyclicTopologyError)
    3. cascade     -- removal rules for links/anchors   (ReferencedEntityInUseError)
    4. uniqueness  -- names non-empty, unique per kind  (InvalidArgumentError,
                                                         DuplicateIdentifierError)
    5. joint kinds -- axis/limits allowed by the kind   (InvalidJointError)

Nothing in this module mutates a live Workcell. Interactive state may be a
forest: several root links are fine until export.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from enum import StrEnum

from workcell_editor.errors import (
    CyclicTopologyError,
    DanglingReferenceError,
    DuplicateIdentifierError,
    InvalidArgumentError,
    InvalidJointError,
    ReferencedEntityInUseError,
    UndoPreconditionError,
)
from workcell_editor.geometry import Vector3
from workcell_editor.model.changes import ChangeSet, ProposedWorkcell
from workcell_editor.model.entities import (
    Entity,
    EntityId,
    EntityKind,
    Joint,
    JointKind,
    JointLimits,
)
from workcell_editor.model.workcell import WorkcellView

logger = logging.getLogger(__name__)

_AXIS_TOLERANCE = 1e-9


class CascadeMode(StrEnum):
    """What happens to the kinematic subtree when a link is removed.

    REPARENT: children are rewired to the removed link's parent (or become
        roots when the removed link was a root).
    SUBTREE: every descendant link and all of their joints are removed too.
    """

    REPARENT = "reparent"
    SUBTREE = "subtree"


def parse_cascade_mode(value: CascadeMode | str) -> CascadeMode:
    try:
        return CascadeMode(value)
    except ValueError as exc:
        choices = ", ".join(m.value for m in CascadeMode)
        raise InvalidArgumentError(
            f"Unknown cascade mode {value!r} (expected one of: {choices})", entity=value
        ) from exc


def parse_joint_kind(value: JointKind | str) -> JointKind:
    try:
        return JointKind(value)
    except ValueError as exc:
        choices = ", ".join(k.value for k in JointKind)
        raise InvalidJointError(
            f"Unknown joint kind {value!r} (expected one of: {choices})", entity=value
        ) from exc


def describe(view: WorkcellView, kind: EntityKind, entity_id: EntityId) -> str:
    """Human-readable label such as ``link 'base' (#3)``."""
    entity = view.get(kind, entity_id)
    if entity is None:
        return f"{kind.value} #{entity_id}"
    return f"{kind.value} '{entity.name}' (#{entity_id})"


# ---------------------------------------------------------------------------
# Shared lookups
# ---------------------------------------------------------------------------

# (kind, id, field) of an entity holding a reference
_Referrer = tuple[EntityKind, EntityId, str]


class _Indexes:
    """Lookup tables over one view, built on first use and shared by a validation pass.

    Also remembers links and anchors already proven to reach a root, so walks
    over long chains stop early. Only valid while the view is unchanged.
    """

    def __init__(self, view: WorkcellView) -> None:
        self.view = view
        self.rooted_links: set[EntityId] = set()
        self.acyclic_anchors: set[EntityId] = set()
        self._parent_joints: dict[EntityId, list[EntityId]] | None = None
        self._names: dict[EntityKind, dict[str, list[EntityId]]] = {}
        self._referrers: dict[tuple[EntityKind, EntityId], _Referrer] | None = None

    def parent_joints(self, link_id: EntityId) -> list[EntityId]:
        if self._parent_joints is None:
            self._parent_joints = self.view.joint_index().parents
        return self._parent_joints.get(link_id, [])

    def named(self, kind: EntityKind, name: str) -> list[EntityId]:
        """Ids of ``kind`` entities called ``name``, sorted."""
        names = self._names.get(kind)
        if names is None:
            table = self.view.entities(kind)
            names = {}
            for entity_id in sorted(table):
                names.setdefault(table[entity_id].name, []).append(entity_id)
            self._names[kind] = names
        return names.get(name, [])

    def referrer(self, kind: EntityKind, entity_id: EntityId) -> _Referrer | None:
        """First entity (by kind, then table order) holding a reference to the target."""
        if self._referrers is None:
            referrers: dict[tuple[EntityKind, EntityId], _Referrer] = {}
            for other_kind in EntityKind:
                for other_id, other in self.view.entities(other_kind).items():
                    for field, ref_kind, ref_id in other.references():
                        referrers.setdefault((ref_kind, ref_id), (other_kind, other_id, field))
            self._referrers = referrers
        return self._referrers.get((kind, entity_id))


# ---------------------------------------------------------------------------
# 1. Existence
# ---------------------------------------------------------------------------


def require(
    view: WorkcellView,
    kind: EntityKind,
    entity_id: EntityId,
    referrer: str | None = None,
) -> Entity:
    """Return the entity or raise DanglingReferenceError naming who asked."""
    entity = view.get(kind, entity_id)
    if entity is None:
        where = f" (referenced by {referrer})" if referrer else ""
        raise DanglingReferenceError(
            f"{kind.value} #{entity_id} does not exist{where}",
            entity=entity_id,
        )
    return entity


def check_references(
    view: WorkcellView,
    kind: EntityKind,
    entity_id: EntityId,
    entity: Entity,
) -> None:
    """Every id held by ``entity`` must resolve in ``view``."""
    for field, ref_kind, ref_id in entity.references():
        if view.get(ref_kind, ref_id) is None:
            raise DanglingReferenceError(
                f"{describe(view, kind, entity_id)} field '{field}' refers to "
                f"missing {ref_kind.value} #{ref_id}",
                entity=entity_id,
            )


def check_no_referrers(
    view: WorkcellView,
    kind: EntityKind,
    entity_id: EntityId,
    indexes: _Indexes | None = None,
) -> None:
    """After a deletion, nothing may still point at the deleted entity."""
    if indexes is None:
        indexes = _Indexes(view)
    hit = indexes.referrer(kind, entity_id)
    if hit is not None:
        other_kind, other_id, field = hit
        raise DanglingReferenceError(
            f"{describe(view, other_kind, other_id)} field '{field}' refers to "
            f"removed {kind.value} #{entity_id}",
            entity=other_id,
        )


# ---------------------------------------------------------------------------
# 2. Acyclicity
# ---------------------------------------------------------------------------


def check_anchor_parent(
    view: WorkcellView,
    anchor_id: EntityId,
    parent: EntityId | None,
) -> None:
    """Reject an anchor parent that is the anchor itself or one of its descendants."""
    if parent is None:
        return
    if parent == anchor_id or anchor_id in _anchor_ancestors(view, parent):
        raise CyclicTopologyError(
            f"Parenting {describe(view, EntityKind.ANCHOR, anchor_id)} under "
            f"{describe(view, EntityKind.ANCHOR, parent)} would create a cycle",
            entity=anchor_id,
        )


def _anchor_ancestors(view: WorkcellView, anchor_id: EntityId) -> set[EntityId]:
    """Ids on the parent chain of ``anchor_id`` (inclusive), cycle-safe."""
    seen: set[EntityId] = set()
    current: EntityId | None = anchor_id
    while current is not None and current not in seen:
        seen.add(current)
        anchor = view.anchor(current)
        current = None if anchor is None else anchor.parent
    return seen


def check_anchor_chain(
    view: WorkcellView,
    anchor_id: EntityId,
    indexes: _Indexes | None = None,
) -> None:
    """Walk to the top-level ancestor; revisiting an anchor means a cycle."""
    verified = indexes.acyclic_anchors if indexes is not None else set()
    seen: set[EntityId] = set()
    current: EntityId | None = anchor_id
    while current is not None and current not in verified:
        if current in seen:
            raise CyclicTopologyError(
                f"Anchor parent chain of {describe(view, EntityKind.ANCHOR, anchor_id)} "
                "contains a cycle",
                entity=sorted(seen),
            )
        seen.add(current)
        anchor = view.anchor(current)
        current = None if anchor is None else anchor.parent
    verified.update(seen)


def check_single_parent(
    view: WorkcellView,
    joint_id: EntityId | None,
    joint: Joint,
    indexes: _Indexes | None = None,
) -> None:
    """The joint's child has no other parent joint and is not its own parent."""
    if joint.parent == joint.child:
        raise CyclicTopologyError(
            f"Joint '{joint.name}' connects {describe(view, EntityKind.LINK, joint.child)} "
            "to itself",
            entity=joint_id,
        )
    parents = (
        view.parent_joints(joint.child) if indexes is None
        else indexes.parent_joints(joint.child)
    )
    others = [jid for jid in parents if jid != joint_id]
    if others:
        raise CyclicTopologyError(
            f"{describe(view, EntityKind.LINK, joint.child)} already has parent joint "
            f"{describe(view, EntityKind.JOINT, others[0])}",
            entity=[joint.child, *others],
        )


def check_joint_acyclic(
    view: WorkcellView,
    joint_id: EntityId | None,
    joint: Joint,
    indexes: _Indexes | None = None,
) -> None:
    """Walk from the joint's parent toward its root; meeting the child means a cycle.

    ``joint`` may be a candidate replacing the stored joint ``joint_id``, so the
    stored one is skipped. Assumes every link on the walk has a single parent
    joint. Links whose walk reached a root are remembered in ``indexes`` and
    end later walks early.
    """
    if indexes is None:
        indexes = _Indexes(view)
    seen: set[EntityId] = set()
    current: EntityId | None = joint.parent
    while current is not None and current not in indexes.rooted_links:
        if current == joint.child:
            raise CyclicTopologyError(
                f"Joint '{joint.name}' would make {describe(view, EntityKind.LINK, joint.child)} "
                f"an ancestor of its own parent {describe(view, EntityKind.LINK, joint.parent)}",
                entity=joint_id,
            )
        if current in seen:
            # Loop above this joint; the joints on it report it themselves
            return
        seen.add(current)
        parents = [jid for jid in indexes.parent_joints(current) if jid != joint_id]
        current = view.joints[parents[0]].parent if parents else None
    indexes.rooted_links.update(seen)


def check_joint_topology(
    view: WorkcellView,
    joint_id: EntityId | None,
    joint: Joint,
    indexes: _Indexes | None = None,
) -> None:
    """The child gets exactly this one parent joint and no cycle appears."""
    if indexes is None:
        indexes = _Indexes(view)
    check_single_parent(view, joint_id, joint, indexes)
    check_joint_acyclic(view, joint_id, joint, indexes)


# ---------------------------------------------------------------------------
# 3. Cascade policy
# ---------------------------------------------------------------------------


def plan_remove_link(
    view: WorkcellView,
    link_id: EntityId,
    mode: CascadeMode,
) -> ProposedWorkcell:
    """Plan the removal of a link under the caller-selected cascade mode."""
    require(view, EntityKind.LINK, link_id)
    mode = parse_cascade_mode(mode)
    proposed = ProposedWorkcell(view)
    parent_jid = view.parent_joint(link_id)

    if mode == CascadeMode.SUBTREE:
        doomed = {link_id, *view.descendants(link_id)}
        for jid, joint in view.joints.items():
            if joint.parent in doomed or joint.child in doomed:
                proposed.delete(EntityKind.JOINT, jid)
        for lid in sorted(doomed):
            proposed.delete(EntityKind.LINK, lid)
    else:
        new_parent = None if parent_jid is None else view.joints[parent_jid].parent
        if parent_jid is not None:
            proposed.delete(EntityKind.JOINT, parent_jid)
        for jid in view.child_joints(link_id):
            if new_parent is None:
                proposed.delete(EntityKind.JOINT, jid)
            else:
                proposed.put(jid, view.joints[jid].model_copy(update={"parent": new_parent}))
        proposed.delete(EntityKind.LINK, link_id)

    validate_entities(proposed, proposed.touched())
    return proposed


def plan_remove_anchor(
    view: WorkcellView,
    anchor_id: EntityId,
    replacement: EntityId | None = None,
) -> ProposedWorkcell:
    """Plan the removal of an anchor.

    Without a replacement the anchor must be unreferenced. With one, every
    reference (links, joints, model instances, child anchors) is rewritten
    to point at the replacement.
    """
    require(view, EntityKind.ANCHOR, anchor_id)
    referents = view.referents(anchor_id)
    proposed = ProposedWorkcell(view)

    if referents and replacement is None:
        labels = ", ".join(describe(view, kind, eid) for kind, eid in referents)
        raise ReferencedEntityInUseError(
            f"{describe(view, EntityKind.ANCHOR, anchor_id)} is still referenced by {labels}",
            entity=[eid for _, eid in referents],
        )

    if replacement is not None:
        require(view, EntityKind.ANCHOR, replacement, referrer="anchor replacement")
        if replacement == anchor_id or anchor_id in _anchor_ancestors(view, replacement):
            raise CyclicTopologyError(
                f"{describe(view, EntityKind.ANCHOR, replacement)} cannot replace "
                f"{describe(view, EntityKind.ANCHOR, anchor_id)}: it is the anchor itself "
                "or one of its descendants",
                entity=replacement,
            )
        for kind, eid in referents:
            entity = view.get(kind, eid)
            proposed.put(eid, retarget(entity, EntityKind.ANCHOR, anchor_id, replacement))

    proposed.delete(EntityKind.ANCHOR, anchor_id)
    validate_entities(proposed, proposed.touched())
    return proposed


def retarget(entity: Entity, kind: EntityKind, old: EntityId, new: EntityId) -> Entity:
    """Copy of ``entity`` with every ``kind`` reference to ``old`` rewritten to ``new``."""
    updates = {
        field: new for field, ref_kind, ref_id in entity.references()
        if ref_kind == kind and ref_id == old
    }
    return entity.model_copy(update=updates) if updates else entity


# ---------------------------------------------------------------------------
# 4. Uniqueness
# ---------------------------------------------------------------------------


def check_name(kind: EntityKind, name: str, entity_id: EntityId | None = None) -> None:
    """Reject empty or whitespace-only names."""
    if not name or not name.strip():
        raise InvalidArgumentError(
            f"{kind.value} name must not be empty",
            entity=entity_id,
            rule="name_not_empty",
        )


def check_name_unique(
    view: WorkcellView,
    kind: EntityKind,
    name: str,
    entity_id: EntityId | None = None,
    indexes: _Indexes | None = None,
) -> None:
    """Names are non-empty and unique within each entity kind.

    Collisions are never auto-renamed.
    """
    check_name(kind, name, entity_id)
    if indexes is not None:
        named = indexes.named(kind, name)
    else:
        named = [oid for oid, other in view.entities(kind).items() if other.name == name]
    others = [oid for oid in named if oid != entity_id]
    if others:
        raise DuplicateIdentifierError(
            f"{kind.value} name '{name}' is already used by "
            f"{describe(view, kind, others[0])}",
            entity=name,
        )


# ---------------------------------------------------------------------------
# 5. Joint kinds
# ---------------------------------------------------------------------------


def check_joint_motion(
    name: str,
    kind: JointKind,
    axis: Vector3 | None,
    limits: JointLimits | None,
) -> tuple[Vector3 | None, JointLimits | None]:
    """Validate axis/limits against the joint kind.

    Returns:
        The axis normalised to unit length, and the limits unchanged.

    Raises:
        InvalidJointError: If the combination is not allowed for ``kind``.
    """
    kind = parse_joint_kind(kind)
    if kind.uses_axis:
        if axis is None:
            raise InvalidJointError(f"{kind.value} joint '{name}' requires an axis", entity=name)
        norm = math.sqrt(sum(v * v for v in axis))
        if not math.isfinite(norm) or norm < _AXIS_TOLERANCE:
            raise InvalidJointError(f"Joint '{name}' axis must be non-zero", entity=name)
        axis = tuple(float(v) / norm for v in axis)  # type: ignore[assignment]
    elif axis is not None:
        raise InvalidJointError(f"{kind.value} joint '{name}' cannot have an axis", entity=name)

    if limits is not None and not kind.allows_limits:
        raise InvalidJointError(f"{kind.value} joint '{name}' cannot have limits", entity=name)
    if limits is None and kind.requires_limits:
        raise InvalidJointError(f"{kind.value} joint '{name}' requires limits", entity=name)
    if limits is not None:
        if limits.lower is not None and limits.upper is not None and limits.lower > limits.upper:
            raise InvalidJointError(
                f"Joint '{name}' lower limit {limits.lower} exceeds upper limit {limits.upper}",
                entity=name,
            )
        for field in ("velocity", "effort"):
            value = getattr(limits, field)
            if value is not None and value < 0:
                raise InvalidJointError(
                    f"Joint '{name}' {field} limit must be non-negative, got {value}",
                    entity=name,
                )
    return axis, limits


# ---------------------------------------------------------------------------
# Whole-state validation
# ---------------------------------------------------------------------------


def validate_entities(
    view: WorkcellView,
    touched: Iterable[tuple[EntityKind, EntityId]],
) -> None:
    """Re-check every invariant that involves the touched entries.

    Used for planned edits, undo/redo replay, and (with every entry touched)
    whole-document validation.
    """
    present: list[tuple[EntityKind, EntityId, Entity]] = []
    absent: list[tuple[EntityKind, EntityId]] = []
    for kind, entity_id in touched:
        entity = view.get(kind, entity_id)
        if entity is None:
            absent.append((kind, entity_id))
        else:
            present.append((kind, entity_id, entity))
    indexes = _Indexes(view)

    for kind, entity_id, entity in present:
        check_references(view, kind, entity_id, entity)
    for kind, entity_id in absent:
        check_no_referrers(view, kind, entity_id, indexes)

    # Every parent must be unique before any acyclicity walk
    joints = [(eid, entity) for kind, eid, entity in present if kind == EntityKind.JOINT]
    for entity_id, joint in joints:
        check_single_parent(view, entity_id, joint, indexes)
    for kind, entity_id, _entity in present:
        if kind == EntityKind.ANCHOR:
            check_anchor_chain(view, entity_id, indexes)
    for entity_id, joint in joints:
        check_joint_acyclic(view, entity_id, joint, indexes)

    for kind, entity_id, entity in present:
        check_name_unique(view, kind, entity.name, entity_id, indexes)

    for kind, entity_id, entity in present:
        if kind == EntityKind.JOINT:
            axis, _ = check_joint_motion(entity.name, entity.kind, entity.axis, entity.limits)
            if axis is not None and any(
                abs(a - b) > 1e-6 for a, b in zip(axis, entity.axis, strict=True)
            ):
                raise InvalidJointError(
                    f"Joint '{entity.name}' axis must be unit length", entity=entity_id
                )


def validate_workcell(view: WorkcellView) -> None:
    """Check every invariant over a complete workcell (decode, import)."""
    validate_entities(view, [(kind, eid) for kind, eid, _ in view.iter_entities()])


def validate_changeset(view: WorkcellView, changeset: ChangeSet) -> ProposedWorkcell:
    """Validate replaying a recorded change set against the current state.

    Each change's ``before`` must still be what the workcell holds; otherwise
    an intervening edit has invalidated the record.

    Raises:
        UndoPreconditionError: If the workcell no longer matches the record.
        WorkcellError: Any integrity violation of the resulting state.
    """
    proposed = ProposedWorkcell(view)
    for change in changeset.changes:
        current = view.get(change.kind, change.entity_id)
        if current != change.before:
            raise UndoPreconditionError(
                f"Cannot replay '{changeset.label}': "
                f"{describe(view, change.kind, change.entity_id)} changed since it was recorded",
                entity=change.entity_id,
            )
        if change.after is None:
            proposed.delete(change.kind, change.entity_id)
        else:
            proposed.put(change.entity_id, change.after)
    validate_entities(proposed, proposed.touched())
    return proposed
