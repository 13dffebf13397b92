"""URDF exporter: Workcell → robot description XML.

The inverse of the importer for representable workcells. In URDF a child
link frame coincides with its parent joint frame, so every non-root link is
emitted in the frame of its joint's origin anchor and its geometry is
re-expressed relative to that frame. Constructs URDF cannot express are
reported as ``UnsupportedTopologyError``, never approximated.
"""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

from lxml import etree

from workcell_editor.errors import UnsupportedTopologyError
from workcell_editor.geometry import LengthUnit, Pose, UpAxis, unit_scale, up_axis_correction
from workcell_editor.model.entities import (
    Box,
    Capsule,
    Cylinder,
    EntityId,
    GeometryElement,
    Inertial,
    Joint,
    JointKind,
    Link,
    Material,
    Mesh,
    ModelInstance,
    Sphere,
)
from workcell_editor.model.workcell import JointIndex, WorkcellView

logger = logging.getLogger(__name__)

_UNIT_SCALE = (1.0, 1.0, 1.0)


class UrdfExporter:
    """Serialize a validated workcell as URDF.

    Args:
        world_frame: If set, emit a link with this name plus a fixed joint
            carrying the root link's placement in the workcell.
        include_model_instances: Emit model instances as rigid links. When
            False they are skipped silently.
    """

    def __init__(
        self,
        world_frame: str | None = None,
        include_model_instances: bool = True,
    ) -> None:
        self.world_frame = world_frame
        self.include_model_instances = include_model_instances

    def export(self, workcell: WorkcellView) -> str:
        """Return the URDF document as text (with XML declaration).

        Raises:
            UnsupportedTopologyError: No links, several disconnected trees,
                capsule geometry, or an irreducible model instance.
        """
        root_ids = workcell.root_links()
        if not root_ids:
            raise UnsupportedTopologyError("Workcell has no links to export", entity=[])
        if len(root_ids) > 1:
            names = [workcell.links[lid].name for lid in root_ids]
            raise UnsupportedTopologyError(
                f"URDF needs a single kinematic tree, found {len(root_ids)} roots: "
                f"{', '.join(names)}",
                entity=root_ids,
            )
        root_id = root_ids[0]
        scale = unit_scale(workcell.metadata.unit, LengthUnit.METRE)
        index = workcell.joint_index()
        writer = _Writer(workcell, scale, index)

        robot = etree.Element("robot", name=workcell.metadata.name)
        writer.materials(robot)

        if self.world_frame:
            writer.names.add(self.world_frame)
            etree.SubElement(robot, "link", name=self.world_frame)

        order, joint_order = _breadth_first(workcell, index, root_id)
        for link_id in order:
            writer.link(robot, link_id)

        if self.world_frame:
            placement = up_axis_correction(workcell.metadata.up_axis, UpAxis.Z).compose(
                writer.frames[root_id]
            )
            writer.fixed_joint(
                robot,
                f"{self.world_frame}_to_{workcell.links[root_id].name}",
                self.world_frame,
                workcell.links[root_id].name,
                placement,
            )
        for joint_id in joint_order:
            writer.joint(robot, joint_id)

        if self.include_model_instances:
            for model_id in sorted(workcell.model_instances):
                writer.model_instance(robot, model_id)

        text = etree.tostring(robot, pretty_print=True, xml_declaration=True, encoding="utf-8")
        logger.info(
            "Exported URDF '%s': %d links, %d joints",
            workcell.metadata.name,
            len(order),
            len(joint_order),
        )
        return text.decode("utf-8")

    def export_file(self, workcell: WorkcellView, path: Path) -> Path:
        """Write the URDF document to ``path``, creating parent directories."""
        text = self.export(workcell)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        logger.info("Wrote URDF to %s", path)
        return path


def _breadth_first(
    workcell: WorkcellView,
    index: JointIndex,
    root_id: EntityId,
) -> tuple[list[EntityId], list[EntityId]]:
    """Links from the root (children ordered by joint id) and the joints in visit order."""
    links: list[EntityId] = []
    joints: list[EntityId] = []
    queue = deque([root_id])
    while queue:
        link_id = queue.popleft()
        links.append(link_id)
        for joint_id in index.children.get(link_id, ()):
            joints.append(joint_id)
            queue.append(workcell.joints[joint_id].child)
    return links, joints


class _Writer:
    """Element builders sharing the frame table of one export."""

    def __init__(self, workcell: WorkcellView, scale: float, index: JointIndex) -> None:
        self.workcell = workcell
        self.index = index
        self.scale = scale
        self.frames: dict[EntityId, Pose] = {}
        self.names: set[str] = set()
        self.joint_names: set[str] = set()
        self.shared: dict[str, Material] = {}

    def frame(self, link_id: EntityId) -> Pose:
        """World pose of the URDF frame of a link."""
        if link_id not in self.frames:
            parents = self.index.parents.get(link_id)
            if not parents:
                pose = self.workcell.link_pose(link_id)
            else:
                pose = self.workcell.world_pose(self.workcell.joints[parents[0]].origin)
            self.frames[link_id] = pose
        return self.frames[link_id]

    def _claim(self, name: str, what: str, joint: bool = False) -> None:
        taken = self.joint_names if joint else self.names
        if name in taken:
            kind = "joint" if joint else "link"
            raise UnsupportedTopologyError(
                f"URDF {kind} name '{name}' ({what}) is already taken", entity=name
            )
        taken.add(name)

    # --- Elements ---

    def materials(self, robot: etree._Element) -> None:
        """Hoist named materials to robot level. Conflicting definitions stay inline."""
        seen: dict[str, Material] = {}
        conflicts: set[str] = set()
        for link in self.workcell.links.values():
            for visual in link.visuals:
                mat = visual.material
                if mat is None or not mat.name or not (mat.rgba or mat.texture):
                    continue
                if seen.setdefault(mat.name, mat) != mat:
                    conflicts.add(mat.name)
        self.shared = {name: mat for name, mat in seen.items() if name not in conflicts}
        for name in sorted(self.shared):
            _material(robot, self.shared[name])

    def link(self, robot: etree._Element, link_id: EntityId) -> None:
        link = self.workcell.links[link_id]
        self._claim(link.name, f"link #{link_id}")
        # link frame expressed in its URDF frame
        local = self.frame(link_id).inverse().compose(self.workcell.link_pose(link_id))

        link_el = etree.SubElement(robot, "link", name=link.name)
        if link.inertial is not None:
            self._inertial(link_el, link.inertial, local)
        for index, visual in enumerate(link.visuals):
            self._element(link_el, "visual", visual, local, link, index)
        for index, collision in enumerate(link.collisions):
            self._element(link_el, "collision", collision, local, link, index)

    def joint(self, robot: etree._Element, joint_id: EntityId) -> None:
        joint: Joint = self.workcell.joints[joint_id]
        self._claim(joint.name, f"joint #{joint_id}", joint=True)
        origin = self.frame(joint.parent).inverse().compose(self.frame(joint.child))
        joint_el = etree.SubElement(robot, "joint", name=joint.name, type=joint.kind.value)
        _origin(joint_el, origin.scaled(self.scale))
        etree.SubElement(joint_el, "parent", link=self.workcell.links[joint.parent].name)
        etree.SubElement(joint_el, "child", link=self.workcell.links[joint.child].name)
        if joint.axis is not None:
            etree.SubElement(joint_el, "axis", xyz=_fmt(joint.axis))
        limits = joint.limits
        if limits is not None:
            if joint.kind.is_linear:
                limits = limits.scaled(self.scale)
            attrs = {
                key: _fmt((value,))
                for key, value in (
                    ("lower", limits.lower),
                    ("upper", limits.upper),
                    ("effort", limits.effort),
                    ("velocity", limits.velocity),
                )
                if value is not None
            }
            etree.SubElement(joint_el, "limit", **attrs)

    def fixed_joint(
        self,
        robot: etree._Element,
        name: str,
        parent: str,
        child: str,
        origin: Pose,
    ) -> None:
        self._claim(name, f"fixed joint to '{child}'", joint=True)
        joint_el = etree.SubElement(robot, "joint", name=name, type=JointKind.FIXED.value)
        _origin(joint_el, origin.scaled(self.scale))
        etree.SubElement(joint_el, "parent", link=parent)
        etree.SubElement(joint_el, "child", link=child)

    def model_instance(self, robot: etree._Element, model_id: EntityId) -> None:
        """Emit an instance as a mesh-only link fixed to the link that carries it."""
        instance: ModelInstance = self.workcell.model_instances[model_id]
        carrier = self._carrier(model_id, instance)
        self._claim(instance.name, f"model instance #{model_id}")

        link_el = etree.SubElement(robot, "link", name=instance.name)
        visual_el = etree.SubElement(link_el, "visual")
        geometry_el = etree.SubElement(visual_el, "geometry")
        mesh_attrs = {"filename": instance.asset}
        if tuple(instance.scale) != _UNIT_SCALE:
            mesh_attrs["scale"] = _fmt(instance.scale)
        etree.SubElement(geometry_el, "mesh", **mesh_attrs)

        origin = self.frame(carrier).inverse().compose(self.workcell.model_pose(model_id))
        self.fixed_joint(
            robot,
            f"{instance.name}_joint",
            self.workcell.links[carrier].name,
            instance.name,
            origin,
        )

    def _carrier(self, model_id: EntityId, instance: ModelInstance) -> EntityId:
        """The single link whose anchor is the instance anchor or its nearest ancestor."""
        for anchor_id in self.workcell.anchor_chain(instance.anchor):
            owners = sorted(
                lid for lid, link in self.workcell.links.items() if link.anchor == anchor_id
            )
            if len(owners) == 1:
                return owners[0]
            if owners:
                raise UnsupportedTopologyError(
                    f"Model instance '{instance.name}' is carried by {len(owners)} links "
                    "sharing one anchor and cannot be reduced to a single rigid link",
                    entity=model_id,
                )
        raise UnsupportedTopologyError(
            f"Model instance '{instance.name}' is not attached to any link and cannot be "
            "reduced to a single rigid link",
            entity=model_id,
        )

    def _element(
        self,
        link_el: etree._Element,
        tag: str,
        element: GeometryElement,
        local: Pose,
        link: Link,
        index: int,
    ) -> None:
        el = etree.SubElement(link_el, tag)
        if element.name is not None:
            el.set("name", element.name)
        _origin(el, local.compose(element.pose).scaled(self.scale))
        geometry_el = etree.SubElement(el, "geometry")
        self._geometry(geometry_el, element.geometry, link)
        mat = element.material
        if tag == "visual" and mat is not None:
            if mat.name and self.shared.get(mat.name) == mat:
                etree.SubElement(el, "material", name=mat.name)
            else:
                _material(el, mat, fallback=f"{link.name}_material_{index}")

    def _geometry(self, parent: etree._Element, geometry, link: Link) -> None:
        geometry = geometry.scaled(self.scale)
        if isinstance(geometry, Box):
            etree.SubElement(parent, "box", size=_fmt(geometry.size))
        elif isinstance(geometry, Cylinder):
            etree.SubElement(
                parent,
                "cylinder",
                radius=_fmt((geometry.radius,)),
                length=_fmt((geometry.length,)),
            )
        elif isinstance(geometry, Sphere):
            etree.SubElement(parent, "sphere", radius=_fmt((geometry.radius,)))
        elif isinstance(geometry, Mesh):
            attrs = {"filename": geometry.source}
            if geometry.scale is not None and tuple(geometry.scale) != _UNIT_SCALE:
                attrs["scale"] = _fmt(geometry.scale)
            etree.SubElement(parent, "mesh", **attrs)
        elif isinstance(geometry, Capsule):
            raise UnsupportedTopologyError(
                f"Link '{link.name}' uses capsule geometry, which URDF cannot represent",
                entity=link.name,
            )

    def _inertial(self, link_el: etree._Element, inertial: Inertial, local: Pose) -> None:
        inertial = inertial.scaled(self.scale)
        inertial_el = etree.SubElement(link_el, "inertial")
        _origin(inertial_el, local.scaled(self.scale).compose(inertial.center))
        etree.SubElement(inertial_el, "mass", value=_fmt((inertial.mass,)))
        etree.SubElement(
            inertial_el,
            "inertia",
            **{
                key: _fmt((getattr(inertial, key),))
                for key in ("ixx", "ixy", "ixz", "iyy", "iyz", "izz")
            },
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _fmt(values) -> str:
    """Space-separated shortest round-trip float text."""
    return " ".join(repr(float(v) + 0.0) for v in values)


def _origin(parent: etree._Element, pose: Pose) -> None:
    if pose.is_identity:
        return
    etree.SubElement(parent, "origin", xyz=_fmt(pose.translation), rpy=_fmt(pose.rpy))


def _material(parent: etree._Element, material: Material, fallback: str = "material") -> None:
    mat_el = etree.SubElement(parent, "material", name=material.name or fallback)
    if material.rgba is not None:
        etree.SubElement(mat_el, "color", rgba=_fmt(material.rgba))
    if material.texture is not None:
        etree.SubElement(mat_el, "texture", filename=material.texture)
