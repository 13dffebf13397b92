"""Workcell entity models.

The workcell is the central data structure of the editor. Anchors carry all
spatial truth; links, joints and model instances point at anchors by id and
never embed raw world coordinates. Entities are immutable: an edit replaces
the value stored in the workcell table, which is what makes every change
trivially reversible.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workcell_editor.geometry import LengthUnit, Pose, UpAxis, Vector3

logger = logging.getLogger(__name__)

EntityId = int


class EntityKind(StrEnum):
    """Table an entity lives in."""

    ANCHOR = "anchor"
    LINK = "link"
    JOINT = "joint"
    MODEL_INSTANCE = "model_instance"


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Box(_Frozen):
    """Axis-aligned box centred on its element pose."""

    type: Literal["box"] = "box"
    size: Vector3

    def scaled(self, factor: float) -> Box:
        return Box(size=tuple(v * factor for v in self.size))


class Cylinder(_Frozen):
    """Cylinder along the local Z axis."""

    type: Literal["cylinder"] = "cylinder"
    radius: float
    length: float

    def scaled(self, factor: float) -> Cylinder:
        return Cylinder(radius=self.radius * factor, length=self.length * factor)


class Sphere(_Frozen):
    type: Literal["sphere"] = "sphere"
    radius: float

    def scaled(self, factor: float) -> Sphere:
        return Sphere(radius=self.radius * factor)


class Capsule(_Frozen):
    """Capsule along the local Z axis. Not representable in URDF."""

    type: Literal["capsule"] = "capsule"
    radius: float
    length: float

    def scaled(self, factor: float) -> Capsule:
        return Capsule(radius=self.radius * factor, length=self.length * factor)


class Mesh(_Frozen):
    """External mesh asset.

    Attributes:
        source: Asset reference (``package://``, ``file://`` or relative path).
        scale: Per-axis scale, or None for unscaled.
        placeholder: True when the asset could not be resolved on import;
            the reference is kept so a later export reproduces it.
    """

    type: Literal["mesh"] = "mesh"
    source: str
    scale: Vector3 | None = None
    placeholder: bool = False

    def scaled(self, factor: float) -> Mesh:
        """Mesh vertices stay in their own units; the scale absorbs the conversion."""
        if factor == 1.0:
            return self
        scale = self.scale or (1.0, 1.0, 1.0)
        return self.model_copy(update={"scale": tuple(v * factor for v in scale)})


Geometry = Annotated[Box | Cylinder | Sphere | Capsule | Mesh, Field(discriminator="type")]


class Material(_Frozen):
    """Surface appearance of a visual element."""

    name: str | None = None
    rgba: tuple[float, float, float, float] | None = None
    texture: str | None = None


class GeometryElement(_Frozen):
    """One visual or collision shape attached to a link.

    Attributes:
        name: Optional element name (not required to be unique).
        geometry: Shape or mesh descriptor.
        pose: Placement relative to the owning link frame.
        material: Appearance, visuals only.
    """

    name: str | None = None
    geometry: Geometry
    pose: Pose = Field(default_factory=Pose)
    material: Material | None = None

    def scaled(self, factor: float) -> GeometryElement:
        return self.model_copy(
            update={"geometry": self.geometry.scaled(factor), "pose": self.pose.scaled(factor)}
        )


class Inertial(_Frozen):
    """Mass properties of a link, expressed in the link frame."""

    mass: float = 0.0
    ixx: float = 0.0
    ixy: float = 0.0
    ixz: float = 0.0
    iyy: float = 0.0
    iyz: float = 0.0
    izz: float = 0.0
    center: Pose = Field(default_factory=Pose)

    @field_validator("mass")
    @classmethod
    def _non_negative_mass(cls, value: float) -> float:
        if value < 0:
            raise ValueError(f"mass must be non-negative, got {value}")
        return value

    def scaled(self, factor: float) -> Inertial:
        """Inertia is mass times length squared; mass itself is unit-free here."""
        f2 = factor * factor
        return Inertial(
            mass=self.mass,
            ixx=self.ixx * f2,
            ixy=self.ixy * f2,
            ixz=self.ixz * f2,
            iyy=self.iyy * f2,
            iyz=self.iyz * f2,
            izz=self.izz * f2,
            center=self.center.scaled(factor),
        )


# ---------------------------------------------------------------------------
# Joints
# ---------------------------------------------------------------------------


class JointKind(StrEnum):
    """Kinematic joint type. Axis and limit rules live here, in one place."""

    FIXED = "fixed"
    REVOLUTE = "revolute"
    PRISMATIC = "prismatic"
    CONTINUOUS = "continuous"
    PLANAR = "planar"
    FLOATING = "floating"

    @property
    def uses_axis(self) -> bool:
        """Kinds that require an axis. All others forbid one."""
        return self in _AXIS_KINDS

    @property
    def requires_limits(self) -> bool:
        return self in (JointKind.REVOLUTE, JointKind.PRISMATIC)

    @property
    def allows_limits(self) -> bool:
        return self in _AXIS_KINDS

    @property
    def is_linear(self) -> bool:
        """Limits of this kind are lengths rather than angles."""
        return self in (JointKind.PRISMATIC, JointKind.PLANAR)


_AXIS_KINDS = frozenset(
    {JointKind.REVOLUTE, JointKind.PRISMATIC, JointKind.CONTINUOUS, JointKind.PLANAR}
)


class JointLimits(_Frozen):
    """Motion limits. Unset bounds are omitted on export."""

    lower: float | None = None
    upper: float | None = None
    velocity: float | None = None
    effort: float | None = None

    def scaled(self, factor: float) -> JointLimits:
        """Scale position and velocity bounds of a linear joint."""
        return self.model_copy(
            update={
                key: None if value is None else value * factor
                for key, value in (
                    ("lower", self.lower),
                    ("upper", self.upper),
                    ("velocity", self.velocity),
                )
            }
        )


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Anchor(_Frozen):
    """A named pose. The only source of spatial truth.

    Attributes:
        name: User-facing name, unique among anchors.
        pose: Pose relative to ``parent`` (or the workcell origin).
        parent: Parent anchor id, or None for a top-level anchor.
    """

    name: str
    pose: Pose = Field(default_factory=Pose)
    parent: EntityId | None = None

    def references(self) -> list[tuple[str, EntityKind, EntityId]]:
        if self.parent is None:
            return []
        return [("parent", EntityKind.ANCHOR, self.parent)]

    def scaled(self, factor: float) -> Anchor:
        return self.model_copy(update={"pose": self.pose.scaled(factor)})


class Link(_Frozen):
    """A rigid body of the kinematic tree.

    Attributes:
        name: User-facing name, unique among links.
        anchor: Anchor the link frame is attached to.
        offset: Link frame relative to the anchor.
        visuals: Ordered visual geometry.
        collisions: Ordered collision geometry.
        inertial: Mass properties, or None when unspecified.
    """

    name: str
    anchor: EntityId
    offset: Pose = Field(default_factory=Pose)
    visuals: tuple[GeometryElement, ...] = ()
    collisions: tuple[GeometryElement, ...] = ()
    inertial: Inertial | None = None

    def references(self) -> list[tuple[str, EntityKind, EntityId]]:
        return [("anchor", EntityKind.ANCHOR, self.anchor)]

    def scaled(self, factor: float) -> Link:
        if factor == 1.0:
            return self
        return self.model_copy(
            update={
                "offset": self.offset.scaled(factor),
                "visuals": tuple(v.scaled(factor) for v in self.visuals),
                "collisions": tuple(c.scaled(factor) for c in self.collisions),
                "inertial": None if self.inertial is None else self.inertial.scaled(factor),
            }
        )


class Joint(_Frozen):
    """A directed edge from a parent link to a child link.

    Attributes:
        name: User-facing name, unique among joints.
        kind: Joint type; decides whether axis/limits may be set.
        parent: Parent link id.
        child: Child link id.
        origin: Anchor locating the joint frame.
        axis: Unit motion axis in the joint frame (moving kinds only).
        limits: Motion limits (moving kinds only).
    """

    name: str
    kind: JointKind
    parent: EntityId
    child: EntityId
    origin: EntityId
    axis: Vector3 | None = None
    limits: JointLimits | None = None

    def references(self) -> list[tuple[str, EntityKind, EntityId]]:
        return [
            ("parent", EntityKind.LINK, self.parent),
            ("child", EntityKind.LINK, self.child),
            ("origin", EntityKind.ANCHOR, self.origin),
        ]

    def scaled(self, factor: float) -> Joint:
        if factor == 1.0 or self.limits is None or not self.kind.is_linear:
            return self
        return self.model_copy(update={"limits": self.limits.scaled(factor)})


class ModelInstance(_Frozen):
    """A placed, reusable asset such as a robot or a fixture.

    Attributes:
        name: User-facing name, unique among model instances.
        asset: External asset identifier.
        anchor: Anchor the instance is placed at.
        offset: Pose override relative to the anchor.
        scale: Per-axis scale override.
    """

    name: str
    asset: str
    anchor: EntityId
    offset: Pose = Field(default_factory=Pose)
    scale: Vector3 = (1.0, 1.0, 1.0)

    def references(self) -> list[tuple[str, EntityKind, EntityId]]:
        return [("anchor", EntityKind.ANCHOR, self.anchor)]

    def scaled(self, factor: float) -> ModelInstance:
        return self.model_copy(update={"offset": self.offset.scaled(factor)})


Entity = Anchor | Link | Joint | ModelInstance

ENTITY_KINDS: dict[type, EntityKind] = {
    Anchor: EntityKind.ANCHOR,
    Link: EntityKind.LINK,
    Joint: EntityKind.JOINT,
    ModelInstance: EntityKind.MODEL_INSTANCE,
}


def kind_of(entity: Entity) -> EntityKind:
    """Return the table kind for an entity value."""
    return ENTITY_KINDS[type(entity)]


class WorkcellMetadata(_Frozen):
    """Scene-level properties.

    Attributes:
        name: Scene name.
        unit: Canonical length unit of every translation and dimension.
        up_axis: Axis that points up in the scene.
    """

    name: str = "workcell"
    unit: LengthUnit = LengthUnit.METRE
    up_axis: UpAxis = UpAxis.Z
