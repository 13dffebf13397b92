"""WorkcellEditor — the single mutation entry point for a live workcell.

Every operation plans its edit on a ``ProposedWorkcell``, runs the integrity
checks, and only then commits one ``ChangeSet``. The change set is recorded
in the journal and a read-only snapshot is pushed to subscribers (the
viewport). A rejected operation raises a ``WorkcellError`` subclass and
leaves the workcell exactly as it was.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from workcell_editor.errors import DanglingReferenceError, WorkcellError
from workcell_editor.geometry import Pose, Vector3, unit_scale, up_axis_correction
from workcell_editor.model.changes import ChangeSet, ProposedWorkcell
from workcell_editor.model.entities import (
    Anchor,
    Entity,
    EntityId,
    EntityKind,
    GeometryElement,
    Inertial,
    Joint,
    JointKind,
    JointLimits,
    Link,
    ModelInstance,
)
from workcell_editor.model.integrity import (
    CascadeMode,
    check_anchor_parent,
    check_joint_motion,
    check_joint_topology,
    check_name,
    check_name_unique,
    describe,
    parse_cascade_mode,
    parse_joint_kind,
    plan_remove_anchor,
    plan_remove_link,
    require,
    validate_entities,
    validate_workcell,
)
from workcell_editor.model.workcell import Workcell, WorkcellView

from .journal import Journal

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[Workcell], None]

_UNSET: Any = object()
_DEFAULT_AXIS: Vector3 = (1.0, 0.0, 0.0)


@dataclass(frozen=True)
class EditResult(Generic[T]):
    """Typed outcome of ``WorkcellEditor.attempt``.

    Attributes:
        ok: True when the operation committed.
        value: Operation return value (new id, id map, ...) on success.
        error: The rejection reason on failure.
    """

    ok: bool
    value: T | None = None
    error: WorkcellError | None = None


class WorkcellEditor:
    """Validated, journaled editing of one workcell.

    Single writer: callers serialize edits. Background jobs only ever see
    snapshots and hand results back through ``merge``.

    Args:
        workcell: Workcell to edit. A fresh empty one is created when omitted.
        journal_depth: Maximum number of undoable edits.
    """

    def __init__(self, workcell: Workcell | None = None, journal_depth: int = 200) -> None:
        self._workcell = workcell if workcell is not None else Workcell()
        self._journal = Journal(max_depth=journal_depth)
        self._subscribers: list[Subscriber] = []

    # --- Read access ---

    @property
    def workcell(self) -> WorkcellView:
        """The live workcell. Treat as read-only; mutate through the editor."""
        return self._workcell

    @property
    def journal(self) -> Journal:
        return self._journal

    @property
    def can_undo(self) -> bool:
        return self._journal.can_undo

    @property
    def can_redo(self) -> bool:
        return self._journal.can_redo

    def snapshot(self) -> Workcell:
        """Independent copy of the current state for viewers and jobs."""
        return self._workcell.copy()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a viewer called with a snapshot after every committed change.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def attempt(self, op: Callable[..., T] | str, *args: Any, **kwargs: Any) -> EditResult[T]:
        """Run an operation and report the outcome instead of raising.

        Args:
            op: Bound editor method or its name (``"create_joint"``).
        """
        fn = getattr(self, op) if isinstance(op, str) else op
        try:
            value = fn(*args, **kwargs)
        except WorkcellError as exc:
            logger.debug("Rejected %s: [%s] %s", getattr(fn, "__name__", fn), exc.rule, exc)
            return EditResult(ok=False, error=exc)
        return EditResult(ok=True, value=value)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_anchor(
        self,
        pose: Pose | None = None,
        name: str | None = None,
        parent: EntityId | None = None,
    ) -> EntityId:
        """Create a named pose, optionally relative to a parent anchor."""
        wc = self._workcell
        if parent is not None:
            require(wc, EntityKind.ANCHOR, parent, referrer="new anchor")
        if name is not None:
            check_name_unique(wc, EntityKind.ANCHOR, name)

        anchor_id = wc.new_id()
        anchor = Anchor(
            name=_default_name(wc, EntityKind.ANCHOR, anchor_id) if name is None else name,
            pose=pose or Pose(),
            parent=parent,
        )
        proposed = ProposedWorkcell(wc)
        proposed.put(anchor_id, anchor)
        self._commit(proposed, f"Create anchor '{anchor.name}'")
        return anchor_id

    def create_link(
        self,
        anchor_id: EntityId,
        geometry: Iterable[Any] = (),
        name: str | None = None,
        collisions: Iterable[Any] = (),
        inertial: Inertial | None = None,
        offset: Pose | None = None,
    ) -> EntityId:
        """Create a link attached to an existing anchor.

        Args:
            anchor_id: Anchor that locates the link.
            geometry: Visual elements, or bare shapes wrapped at identity pose.
            collisions: Collision elements, same forms as ``geometry``.
        """
        wc = self._workcell
        require(wc, EntityKind.ANCHOR, anchor_id, referrer="new link")
        if name is not None:
            check_name_unique(wc, EntityKind.LINK, name)

        link_id = wc.new_id()
        link = Link(
            name=_default_name(wc, EntityKind.LINK, link_id) if name is None else name,
            anchor=anchor_id,
            offset=offset or Pose(),
            visuals=_elements(geometry),
            collisions=_elements(collisions),
            inertial=inertial,
        )
        proposed = ProposedWorkcell(wc)
        proposed.put(link_id, link)
        self._commit(proposed, f"Create link '{link.name}'")
        return link_id

    def create_joint(
        self,
        parent: EntityId,
        child: EntityId,
        kind: JointKind | str,
        origin_anchor: EntityId,
        name: str | None = None,
        axis: Vector3 | None = None,
        limits: JointLimits | None = None,
    ) -> EntityId:
        """Connect two links.

        Moving kinds default to the x axis and, where limits are mandatory,
        to zero-width limits.

        Raises:
            DanglingReferenceError: A link or the origin anchor does not exist.
            CyclicTopologyError: The child already has a parent joint, or the
                joint would close a cycle.
            InvalidJointError: Unknown kind, or axis/limits not allowed for it.
            InvalidArgumentError: ``name`` is empty.
        """
        wc = self._workcell
        kind = parse_joint_kind(kind)
        if name is not None:
            check_name(EntityKind.JOINT, name)
        require(wc, EntityKind.LINK, parent, referrer="joint parent")
        require(wc, EntityKind.LINK, child, referrer="joint child")
        require(wc, EntityKind.ANCHOR, origin_anchor, referrer="joint origin")

        axis, limits = _motion_defaults(kind, axis, limits)
        label = name if name is not None else (
            f"{describe(wc, EntityKind.LINK, parent)} -> {describe(wc, EntityKind.LINK, child)}"
        )
        axis, limits = check_joint_motion(label, kind, axis, limits)
        candidate = Joint(
            name="pending" if name is None else name,
            kind=kind,
            parent=parent,
            child=child,
            origin=origin_anchor,
            axis=axis,
            limits=limits,
        )
        check_joint_topology(wc, None, candidate)
        if name is not None:
            check_name_unique(wc, EntityKind.JOINT, name)

        joint_id = wc.new_id()
        joint = candidate.model_copy(
            update={"name": _default_name(wc, EntityKind.JOINT, joint_id) if name is None else name}
        )
        proposed = ProposedWorkcell(wc)
        proposed.put(joint_id, joint)
        self._commit(proposed, f"Create joint '{joint.name}'")
        return joint_id

    def create_model_instance(
        self,
        asset_ref: str,
        anchor_id: EntityId,
        name: str | None = None,
        scale: Vector3 | None = None,
        offset: Pose | None = None,
    ) -> EntityId:
        """Place an external asset at an anchor."""
        wc = self._workcell
        require(wc, EntityKind.ANCHOR, anchor_id, referrer="new model instance")
        if name is not None:
            check_name_unique(wc, EntityKind.MODEL_INSTANCE, name)

        model_id = wc.new_id()
        instance = ModelInstance(
            name=(
                _default_name(wc, EntityKind.MODEL_INSTANCE, model_id) if name is None else name
            ),
            asset=asset_ref,
            anchor=anchor_id,
            offset=offset or Pose(),
            scale=scale or (1.0, 1.0, 1.0),
        )
        proposed = ProposedWorkcell(wc)
        proposed.put(model_id, instance)
        self._commit(proposed, f"Place '{instance.name}'")
        return model_id

    # ------------------------------------------------------------------
    # Modification
    # ------------------------------------------------------------------

    def move_anchor(self, anchor_id: EntityId, pose: Pose) -> None:
        """Set an anchor's pose relative to its parent. Dependents follow."""
        anchor = require(self._workcell, EntityKind.ANCHOR, anchor_id)
        self._replace(anchor_id, anchor.model_copy(update={"pose": pose}),
                      f"Move anchor '{anchor.name}'")

    def reparent_anchor(
        self,
        anchor_id: EntityId,
        new_parent: EntityId | None,
        keep_world_pose: bool = True,
    ) -> None:
        """Attach an anchor to another parent anchor (None for top level).

        Args:
            keep_world_pose: Recompute the relative pose so the anchor does
                not move in the world. Otherwise the relative pose is kept
                and the anchor moves with its new parent.
        """
        wc = self._workcell
        anchor = require(wc, EntityKind.ANCHOR, anchor_id)
        if new_parent is not None:
            require(wc, EntityKind.ANCHOR, new_parent, referrer="anchor parent")
        check_anchor_parent(wc, anchor_id, new_parent)

        pose = anchor.pose
        if keep_world_pose:
            world = wc.world_pose(anchor_id)
            pose = world if new_parent is None else world.relative_to(wc.world_pose(new_parent))
        updated = anchor.model_copy(update={"parent": new_parent, "pose": pose})
        self._replace(anchor_id, updated, f"Reparent anchor '{anchor.name}'")

    def rename(self, entity_id: EntityId, name: str) -> None:
        """Rename an entity of any kind. Names stay unique per kind."""
        wc = self._workcell
        found = wc.locate(entity_id)
        if found is None:
            raise DanglingReferenceError(f"Entity #{entity_id} does not exist", entity=entity_id)
        kind, entity = found
        check_name_unique(wc, kind, name, entity_id)
        self._replace(entity_id, entity.model_copy(update={"name": name}),
                      f"Rename {kind.value} '{entity.name}' to '{name}'")

    def set_joint_motion(
        self,
        joint_id: EntityId,
        kind: JointKind | str | None = None,
        axis: Vector3 | None = _UNSET,
        limits: JointLimits | None = _UNSET,
    ) -> None:
        """Change a joint's kind, axis or limits.

        Omitted arguments keep their current value where the (new) kind
        allows it and are dropped where it does not. Pass ``None`` to clear.
        """
        joint: Joint = require(
            self._workcell, EntityKind.JOINT, joint_id
        )  # type: ignore[assignment]
        new_kind = parse_joint_kind(kind) if kind is not None else joint.kind
        if axis is _UNSET:
            axis = joint.axis if new_kind.uses_axis else None
        if limits is _UNSET:
            limits = joint.limits if new_kind.allows_limits else None
        axis, limits = _motion_defaults(new_kind, axis, limits)
        axis, limits = check_joint_motion(joint.name, new_kind, axis, limits)
        updated = joint.model_copy(update={"kind": new_kind, "axis": axis, "limits": limits})
        self._replace(joint_id, updated, f"Edit joint '{joint.name}'")

    def reparent_joint(self, joint_id: EntityId, new_parent: EntityId) -> None:
        """Move a joint (and with it the child subtree) under another link."""
        wc = self._workcell
        joint: Joint = require(wc, EntityKind.JOINT, joint_id)  # type: ignore[assignment]
        require(wc, EntityKind.LINK, new_parent, referrer=f"joint '{joint.name}'")
        updated = joint.model_copy(update={"parent": new_parent})
        check_joint_topology(wc, joint_id, updated)
        self._replace(joint_id, updated, f"Reparent joint '{joint.name}'")

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_anchor(self, anchor_id: EntityId, replacement: EntityId | None = None) -> None:
        """Remove an anchor.

        Args:
            replacement: Anchor that takes over every reference to the removed
                one. Without it, a referenced anchor cannot be removed.

        Raises:
            ReferencedEntityInUseError: Still referenced and no replacement given.
        """
        name = describe(self._workcell, EntityKind.ANCHOR, anchor_id)
        proposed = plan_remove_anchor(self._workcell, anchor_id, replacement)
        self._commit(proposed, f"Remove {name}")

    def remove_link(self, link_id: EntityId, mode: CascadeMode | str) -> None:
        """Remove a link, handling its subtree according to ``mode``."""
        name = describe(self._workcell, EntityKind.LINK, link_id)
        mode = parse_cascade_mode(mode)
        proposed = plan_remove_link(self._workcell, link_id, mode)
        self._commit(proposed, f"Remove {name} ({mode.value})")

    def remove_joint(self, joint_id: EntityId) -> None:
        """Remove a joint; its child link becomes a root."""
        self._remove(EntityKind.JOINT, joint_id)

    def remove_model_instance(self, model_id: EntityId) -> None:
        self._remove(EntityKind.MODEL_INSTANCE, model_id)

    # ------------------------------------------------------------------
    # Merge (import results entering the live workcell)
    # ------------------------------------------------------------------

    def merge(
        self,
        imported: WorkcellView,
        prefix: str = "",
        parent_anchor: EntityId | None = None,
    ) -> dict[EntityId, EntityId]:
        """Copy a separately built workcell into this one as one undoable edit.

        Every entity gets a fresh id from this document's allocator and its
        name is prefixed. Lengths are converted to this workcell's unit and
        top-level anchors are rotated into this workcell's up-axis
        convention, then optionally attached under ``parent_anchor``.

        Returns:
            Mapping from ids in ``imported`` to the newly allocated ids.

        Raises:
            WorkcellError: ``imported`` is itself invalid, or merging it would
                collide with existing names.
        """
        wc = self._workcell
        validate_workcell(imported)
        if parent_anchor is not None:
            require(wc, EntityKind.ANCHOR, parent_anchor, referrer="merge target")

        factor = unit_scale(imported.metadata.unit, wc.metadata.unit)
        correction = up_axis_correction(imported.metadata.up_axis, wc.metadata.up_axis)

        entries = list(imported.iter_entities())
        id_map = {entity_id: wc.new_id() for _, entity_id, _ in entries}

        proposed = ProposedWorkcell(wc)
        for _, entity_id, entity in entries:
            moved = _remap(entity.scaled(factor), id_map)
            updates: dict[str, Any] = {"name": f"{prefix}{moved.name}"}
            if isinstance(moved, Anchor) and moved.parent is None:
                updates["pose"] = correction.compose(moved.pose)
                updates["parent"] = parent_anchor
            proposed.put(id_map[entity_id], moved.model_copy(update=updates))

        self._commit(proposed, f"Merge '{imported.metadata.name}'")
        logger.info(
            "Merged '%s' into '%s': %d entities (scale %.6g)",
            imported.metadata.name,
            wc.metadata.name,
            len(id_map),
            factor,
        )
        return id_map

    # ------------------------------------------------------------------
    # Undo / redo
    # ------------------------------------------------------------------

    def undo(self) -> ChangeSet | None:
        """Reverse the most recent edit.

        Raises:
            UndoPreconditionError: The edit no longer applies; older history
                has been discarded.
        """
        applied = self._journal.undo(self._workcell)
        if applied is not None:
            self._notify()
        return applied

    def redo(self) -> ChangeSet | None:
        applied = self._journal.redo(self._workcell)
        if applied is not None:
            self._notify()
        return applied

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _replace(self, entity_id: EntityId, entity: Entity, label: str) -> None:
        proposed = ProposedWorkcell(self._workcell)
        proposed.put(entity_id, entity)
        self._commit(proposed, label)

    def _remove(self, kind: EntityKind, entity_id: EntityId) -> None:
        name = describe(self._workcell, kind, entity_id)
        require(self._workcell, kind, entity_id)
        proposed = ProposedWorkcell(self._workcell)
        proposed.delete(kind, entity_id)
        self._commit(proposed, f"Remove {name}")

    def _commit(self, proposed: ProposedWorkcell, label: str) -> ChangeSet:
        """Validate the proposed state, then apply, record and announce it."""
        validate_entities(proposed, proposed.touched())
        changeset = proposed.to_changeset(label)
        if not changeset:
            logger.debug("No-op edit '%s' skipped", label)
            return changeset
        changeset.apply_to(self._workcell)
        self._journal.record(changeset)
        logger.debug("Committed '%s'", label)
        self._notify()
        return changeset

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.error("Workcell subscriber %r failed", callback, exc_info=True)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _default_name(view: WorkcellView, kind: EntityKind, entity_id: EntityId) -> str:
    """``<kind>_<id>``, suffixed if a user already took that name."""
    base = f"{kind.value}_{entity_id}"
    name, n = base, 1
    while view.find_by_name(kind, name) is not None:
        name = f"{base}_{n}"
        n += 1
    return name


def _elements(items: Iterable[Any]) -> tuple[GeometryElement, ...]:
    return tuple(
        item if isinstance(item, GeometryElement) else GeometryElement(geometry=item)
        for item in items
    )


def _motion_defaults(
    kind: JointKind,
    axis: Vector3 | None,
    limits: JointLimits | None,
) -> tuple[Vector3 | None, JointLimits | None]:
    if kind.uses_axis and axis is None:
        axis = _DEFAULT_AXIS
    if kind.requires_limits and limits is None:
        limits = JointLimits(lower=0.0, upper=0.0, velocity=0.0, effort=0.0)
    return axis, limits


def _remap(entity: Entity, id_map: dict[EntityId, EntityId]) -> Entity:
    """Rewrite every reference held by ``entity`` through ``id_map``."""
    updates = {field: id_map[ref_id] for field, _, ref_id in entity.references()}
    return entity.model_copy(update=updates) if updates else entity
