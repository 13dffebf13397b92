"""Workcell data model: entities, the aggregate root, change records and integrity checks."""

from .changes import Change, ChangeSet, ProposedWorkcell
from .entities import (
    Anchor,
    Box,
    Capsule,
    Cylinder,
    Entity,
    EntityId,
    EntityKind,
    Geometry,
    GeometryElement,
    Inertial,
    Joint,
    JointKind,
    JointLimits,
    Link,
    Material,
    Mesh,
    ModelInstance,
    Sphere,
    WorkcellMetadata,
)
from .ids import IdAllocator
from .integrity import CascadeMode, validate_workcell
from .workcell import Workcell, WorkcellView

__all__ = [
    "Anchor",
    "Box",
    "Capsule",
    "CascadeMode",
    "Change",
    "ChangeSet",
    "Cylinder",
    "Entity",
    "EntityId",
    "EntityKind",
    "Geometry",
    "GeometryElement",
    "IdAllocator",
    "Inertial",
    "Joint",
    "JointKind",
    "JointLimits",
    "Link",
    "Material",
    "Mesh",
    "ModelInstance",
    "ProposedWorkcell",
    "Sphere",
    "Workcell",
    "WorkcellMetadata",
    "WorkcellView",
    "validate_workcell",
]
