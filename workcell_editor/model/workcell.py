"""The Workcell aggregate root and its read-only query surface.

All entities live in per-kind tables keyed by id. Cross references are ids
resolved through these tables, so relocating an anchor relocates every link,
joint, model instance and child anchor that points at it.

Only ``ChangeSet.apply_to`` writes to a Workcell; everything else goes
through the editor and the integrity checks first.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from workcell_editor.geometry import Pose
from workcell_editor.model.entities import (
    Anchor,
    Entity,
    EntityId,
    EntityKind,
    Joint,
    Link,
    ModelInstance,
    WorkcellMetadata,
)
from workcell_editor.model.ids import IdAllocator

logger = logging.getLogger(__name__)


@dataclass
class JointIndex:
    """Joints grouped by link, each list sorted by joint id.

    Attributes:
        parents: Link id to the joints whose child it is.
        children: Link id to the joints whose parent it is.
    """

    parents: dict[EntityId, list[EntityId]] = field(default_factory=dict)
    children: dict[EntityId, list[EntityId]] = field(default_factory=dict)


class WorkcellView:
    """Read queries shared by the live workcell and proposed (unvalidated) states.

    Subclasses provide ``entities(kind)`` and ``metadata``.
    """

    metadata: WorkcellMetadata

    def entities(self, kind: EntityKind) -> Mapping[EntityId, Entity]:
        raise NotImplementedError

    def get(self, kind: EntityKind, entity_id: EntityId) -> Entity | None:
        return self.entities(kind).get(entity_id)

    def locate(self, entity_id: EntityId) -> tuple[EntityKind, Entity] | None:
        """Find an entity of any kind by id."""
        for kind in EntityKind:
            entity = self.get(kind, entity_id)
            if entity is not None:
                return kind, entity
        return None

    # --- Typed tables ---

    @property
    def anchors(self) -> Mapping[EntityId, Anchor]:
        return self.entities(EntityKind.ANCHOR)  # type: ignore[return-value]

    @property
    def links(self) -> Mapping[EntityId, Link]:
        return self.entities(EntityKind.LINK)  # type: ignore[return-value]

    @property
    def joints(self) -> Mapping[EntityId, Joint]:
        return self.entities(EntityKind.JOINT)  # type: ignore[return-value]

    @property
    def model_instances(self) -> Mapping[EntityId, ModelInstance]:
        return self.entities(EntityKind.MODEL_INSTANCE)  # type: ignore[return-value]

    def anchor(self, anchor_id: EntityId) -> Anchor | None:
        return self.anchors.get(anchor_id)

    def link(self, link_id: EntityId) -> Link | None:
        return self.links.get(link_id)

    def joint(self, joint_id: EntityId) -> Joint | None:
        return self.joints.get(joint_id)

    def model_instance(self, model_id: EntityId) -> ModelInstance | None:
        return self.model_instances.get(model_id)

    def find_by_name(self, kind: EntityKind, name: str) -> EntityId | None:
        for entity_id, entity in self.entities(kind).items():
            if entity.name == name:
                return entity_id
        return None

    def find_anchor_by_name(self, name: str) -> EntityId | None:
        return self.find_by_name(EntityKind.ANCHOR, name)

    def find_link_by_name(self, name: str) -> EntityId | None:
        return self.find_by_name(EntityKind.LINK, name)

    def find_joint_by_name(self, name: str) -> EntityId | None:
        return self.find_by_name(EntityKind.JOINT, name)

    # --- Spatial queries ---

    def anchor_chain(self, anchor_id: EntityId) -> list[EntityId]:
        """Anchor ids from ``anchor_id`` up to its top-level ancestor.

        Stops early on a missing parent or a revisited id, so it is safe on
        unvalidated proposed states.
        """
        chain: list[EntityId] = []
        seen: set[EntityId] = set()
        current: EntityId | None = anchor_id
        while current is not None and current not in seen:
            anchor = self.anchor(current)
            if anchor is None:
                break
            chain.append(current)
            seen.add(current)
            current = anchor.parent
        return chain

    def world_pose(self, anchor_id: EntityId) -> Pose:
        """Pose of an anchor relative to the workcell origin.

        Raises:
            KeyError: If the anchor does not exist.
        """
        if self.anchor(anchor_id) is None:
            raise KeyError(anchor_id)
        pose = Pose.identity()
        for aid in reversed(self.anchor_chain(anchor_id)):
            pose = pose.compose(self.anchors[aid].pose)
        return pose

    def link_pose(self, link_id: EntityId) -> Pose:
        """World pose of a link frame (anchor pose composed with the link offset)."""
        link = self.links[link_id]
        return self.world_pose(link.anchor).compose(link.offset)

    def model_pose(self, model_id: EntityId) -> Pose:
        instance = self.model_instances[model_id]
        return self.world_pose(instance.anchor).compose(instance.offset)

    def child_anchors(self, anchor_id: EntityId) -> list[EntityId]:
        return sorted(aid for aid, a in self.anchors.items() if a.parent == anchor_id)

    def referents(self, anchor_id: EntityId) -> list[tuple[EntityKind, EntityId]]:
        """Every entity holding a reference to ``anchor_id``, sorted by id."""
        out: list[tuple[EntityKind, EntityId]] = []
        for kind in EntityKind:
            for entity_id, entity in self.entities(kind).items():
                for _, ref_kind, ref_id in entity.references():
                    if ref_kind == EntityKind.ANCHOR and ref_id == anchor_id:
                        out.append((kind, entity_id))
                        break
        return sorted(out, key=lambda item: item[1])

    # --- Kinematic queries ---

    def joint_index(self) -> JointIndex:
        """Parent and child joints of every link, built in one pass over the joints."""
        index = JointIndex()
        joints = self.joints
        for jid in sorted(joints):
            joint = joints[jid]
            index.parents.setdefault(joint.child, []).append(jid)
            index.children.setdefault(joint.parent, []).append(jid)
        return index

    def parent_joints(self, link_id: EntityId) -> list[EntityId]:
        """All joints whose child is ``link_id`` (at most one once validated)."""
        return sorted(jid for jid, j in self.joints.items() if j.child == link_id)

    def parent_joint(self, link_id: EntityId) -> EntityId | None:
        parents = self.parent_joints(link_id)
        return parents[0] if parents else None

    def child_joints(self, link_id: EntityId) -> list[EntityId]:
        return sorted(jid for jid, j in self.joints.items() if j.parent == link_id)

    def parent_link(self, link_id: EntityId) -> EntityId | None:
        jid = self.parent_joint(link_id)
        return None if jid is None else self.joints[jid].parent

    def root_links(self) -> list[EntityId]:
        """Links with no parent joint, sorted by id."""
        children = {j.child for j in self.joints.values()}
        return sorted(lid for lid in self.links if lid not in children)

    def descendants(self, link_id: EntityId) -> list[EntityId]:
        """Breadth-first descendant links of ``link_id`` (excluding itself)."""
        children = self.joint_index().children
        joints = self.joints
        out: list[EntityId] = []
        seen = {link_id}
        queue = deque([link_id])
        while queue:
            current = queue.popleft()
            for jid in children.get(current, ()):
                child = joints[jid].child
                if child not in seen:
                    seen.add(child)
                    out.append(child)
                    queue.append(child)
        return out

    def iter_entities(self) -> Iterator[tuple[EntityKind, EntityId, Entity]]:
        for kind in EntityKind:
            for entity_id in sorted(self.entities(kind)):
                yield kind, entity_id, self.entities(kind)[entity_id]

    def entity_count(self) -> int:
        return sum(len(self.entities(kind)) for kind in EntityKind)


class Workcell(WorkcellView):
    """Aggregate root: owns every anchor, link, joint and model instance.

    Args:
        metadata: Scene-level properties.
        allocator: Id allocator of the editing session. A fresh one is
            created when omitted.
    """

    def __init__(
        self,
        metadata: WorkcellMetadata | None = None,
        allocator: IdAllocator | None = None,
    ) -> None:
        self.metadata = metadata or WorkcellMetadata()
        self.allocator = allocator or IdAllocator()
        self._tables: dict[EntityKind, dict[EntityId, Entity]] = {kind: {} for kind in EntityKind}

    def entities(self, kind: EntityKind) -> Mapping[EntityId, Entity]:
        return MappingProxyType(self._tables[kind])

    def new_id(self) -> EntityId:
        return self.allocator.allocate()

    def _store(self, kind: EntityKind, entity_id: EntityId, entity: Entity | None) -> None:
        """Write or delete one table entry. Only ChangeSet.apply_to calls this."""
        table = self._tables[kind]
        if entity is None:
            table.pop(entity_id, None)
        else:
            table[entity_id] = entity
            self.allocator.advance_past(entity_id)

    def copy(self) -> Workcell:
        """Independent snapshot sharing the (immutable) entity values.

        The copy shares the allocator, so ids allocated against it stay
        unique within the session.
        """
        clone = Workcell(self.metadata, self.allocator)
        for kind in EntityKind:
            clone._tables[kind] = dict(self._tables[kind])
        return clone

    def same_state(self, other: WorkcellView) -> bool:
        """Same metadata and identical entity tables."""
        if self.metadata != other.metadata:
            return False
        return all(dict(self.entities(k)) == dict(other.entities(k)) for k in EntityKind)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Workcell):
            return NotImplemented
        return self.same_state(other)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"Workcell(name={self.metadata.name!r}, anchors={len(self.anchors)}, "
            f"links={len(self.links)}, joints={len(self.joints)}, "
            f"model_instances={len(self.model_instances)})"
        )
