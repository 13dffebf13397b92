"""URDF importer: robot description XML → Workcell.

Parses with lxml in two passes. The first pass collects named links and
joints and checks the kinematic tree (one root, one parent per child, no
cycles). The second pass walks the tree breadth-first from the root and
synthesizes one anchor per link, chained through the joint origins.

Structural problems are fatal. Missing mesh assets and unknown materials
are not: they become placeholders plus an ``ImportIssue``.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from lxml import etree

from workcell_editor.errors import (
    CyclicTopologyError,
    DuplicateIdentifierError,
    InvalidJointError,
    MalformedDocumentError,
    UnresolvedNameError,
)
from workcell_editor.geometry import LengthUnit, Pose, Vector3, unit_scale
from workcell_editor.io.assets import AssetResolver, LocalAssetResolver, Missing
from workcell_editor.model.changes import ProposedWorkcell
from workcell_editor.model.entities import (
    Anchor,
    Box,
    Cylinder,
    EntityId,
    GeometryElement,
    Inertial,
    Joint,
    JointKind,
    JointLimits,
    Link,
    Material,
    Mesh,
    Sphere,
    WorkcellMetadata,
)
from workcell_editor.model.integrity import check_joint_motion, validate_workcell
from workcell_editor.model.workcell import Workcell

logger = logging.getLogger(__name__)

_DEFAULT_AXIS: Vector3 = (1.0, 0.0, 0.0)

_PARSER = etree.XMLParser(remove_comments=True, resolve_entities=False, no_network=True)


@dataclass(frozen=True)
class ImportIssue:
    """Non-fatal problem found during import.

    Attributes:
        element: Name of the link (or robot) the issue belongs to.
        message: Human-readable description.
    """

    element: str
    message: str


@dataclass
class ImportResult:
    """Outcome of a successful import.

    Attributes:
        workcell: Freshly built, validated workcell (own id allocator).
        warnings: Non-fatal issues, in document order.
        root_link: Id of the root link, None for an empty workcell.
        unit_scale: Factor applied to convert metres into the target unit.
    """

    workcell: Workcell
    warnings: list[ImportIssue] = field(default_factory=list)
    root_link: EntityId | None = None
    unit_scale: float = 1.0


@dataclass
class _JointSpec:
    name: str
    kind: JointKind
    parent: str
    child: str
    element: etree._Element


class UrdfImporter:
    """Build workcells from URDF documents.

    Args:
        asset_resolver: Resolves mesh references. Defaults to a
            ``LocalAssetResolver`` rooted at the document directory.
        unit: Length unit of the produced workcell. URDF is always metres.
    """

    def __init__(
        self,
        asset_resolver: AssetResolver | None = None,
        unit: LengthUnit | str = LengthUnit.METRE,
    ) -> None:
        self.asset_resolver = asset_resolver
        self.unit = LengthUnit(unit)

    def parse(self, source: str | bytes | Path) -> ImportResult:
        """Import a URDF document.

        Args:
            source: XML text, XML bytes, or a ``Path`` to a URDF file.

        Raises:
            MalformedDocumentError: Invalid XML or URDF structure.
            DuplicateIdentifierError: Two links or two joints share a name.
            UnresolvedNameError: A joint names a link that does not exist.
            CyclicTopologyError: Not exactly one root, or a cycle.
        """
        resolver = self.asset_resolver
        if isinstance(source, Path):
            try:
                data = source.read_bytes()
            except OSError as e:
                raise MalformedDocumentError(
                    f"Cannot read {source}: {e}", entity=str(source)
                ) from e
            if resolver is None:
                resolver = LocalAssetResolver(base_dir=source.parent)
            elif isinstance(resolver, LocalAssetResolver) and resolver.base_dir is None:
                resolver = resolver.with_base_dir(source.parent)
        elif isinstance(source, str):
            data = source.encode("utf-8")
        else:
            data = source
        if resolver is None:
            resolver = LocalAssetResolver()

        return _ImportRun(resolver, self.unit).run(data)


class _ImportRun:
    """State of one import: warnings and the robot-level material table."""

    def __init__(self, resolver: AssetResolver, unit: LengthUnit) -> None:
        self.resolver = resolver
        self.unit = unit
        self.scale = unit_scale(LengthUnit.METRE, unit)
        self.warnings: list[ImportIssue] = []
        self.materials: dict[str, Material] = {}

    def run(self, data: bytes) -> ImportResult:
        try:
            robot = etree.fromstring(data, _PARSER)
        except etree.XMLSyntaxError as e:
            raise MalformedDocumentError(f"Invalid XML: {e}") from e
        if robot.tag != "robot":
            raise MalformedDocumentError(
                f"Root element must be <robot>, got <{robot.tag}>", entity=robot.tag
            )
        robot_name = robot.get("name") or "robot"

        for mat_el in robot.findall("material"):
            material = self._material(mat_el, robot_name, top_level=True)
            self.materials[material.name] = material

        links = self._collect_links(robot)
        joints = self._collect_joints(robot, links)
        root, order, parent_joint = _check_tree(links, joints)

        workcell = Workcell(WorkcellMetadata(name=robot_name, unit=self.unit))
        proposed = ProposedWorkcell(workcell)
        anchor_of: dict[str, EntityId] = {}
        link_ids: dict[str, EntityId] = {}

        for link_name in order:
            spec = parent_joint.get(link_name)
            if spec is None:
                pose, parent_anchor = Pose(), None
            else:
                pose = self._origin(spec.element)
                parent_anchor = anchor_of[spec.parent]

            anchor_id = workcell.new_id()
            proposed.put(anchor_id, Anchor(name=link_name, pose=pose, parent=parent_anchor))
            anchor_of[link_name] = anchor_id

            link_id = workcell.new_id()
            proposed.put(link_id, self._link(links[link_name], link_name, anchor_id))
            link_ids[link_name] = link_id

            if spec is not None:
                joint_id = workcell.new_id()
                proposed.put(joint_id, self._joint(spec, link_ids, anchor_id))

        validate_workcell(proposed)
        proposed.to_changeset(f"Import '{robot_name}'").apply_to(workcell)

        logger.info(
            "Imported URDF '%s': %d links, %d joints, %d warnings",
            robot_name,
            len(links),
            len(joints),
            len(self.warnings),
        )
        return ImportResult(
            workcell=workcell,
            warnings=self.warnings,
            root_link=link_ids[root],
            unit_scale=self.scale,
        )

    # --- First pass ---

    def _collect_links(self, robot: etree._Element) -> dict[str, etree._Element]:
        links: dict[str, etree._Element] = {}
        for link_el in robot.findall("link"):
            name = _required(link_el, "name", "link")
            if name in links:
                raise DuplicateIdentifierError(f"Duplicate link name '{name}'", entity=name)
            links[name] = link_el
        if not links:
            raise MalformedDocumentError("URDF defines no links")
        return links

    def _collect_joints(
        self,
        robot: etree._Element,
        links: dict[str, etree._Element],
    ) -> list[_JointSpec]:
        joints: list[_JointSpec] = []
        seen: set[str] = set()
        for joint_el in robot.findall("joint"):
            name = _required(joint_el, "name", "joint")
            if name in seen:
                raise DuplicateIdentifierError(f"Duplicate joint name '{name}'", entity=name)
            seen.add(name)

            type_str = _required(joint_el, "type", f"joint '{name}'")
            try:
                kind = JointKind(type_str)
            except ValueError as e:
                raise MalformedDocumentError(
                    f"Joint '{name}' has unknown type '{type_str}'", entity=name
                ) from e

            ends = {}
            for tag in ("parent", "child"):
                end_el = joint_el.find(tag)
                if end_el is None:
                    raise MalformedDocumentError(f"Joint '{name}' has no <{tag}>", entity=name)
                link_name = _required(end_el, "link", f"joint '{name}' <{tag}>")
                if link_name not in links:
                    raise UnresolvedNameError(
                        f"Joint '{name}' {tag} refers to undefined link '{link_name}'",
                        entity=link_name,
                    )
                ends[tag] = link_name
            joints.append(_JointSpec(name, kind, ends["parent"], ends["child"], joint_el))
        return joints

    # --- Second pass ---

    def _link(self, link_el: etree._Element, name: str, anchor_id: EntityId) -> Link:
        visuals = tuple(
            self._element(el, name, visual=True) for el in link_el.findall("visual")
        )
        collisions = tuple(
            self._element(el, name, visual=False) for el in link_el.findall("collision")
        )
        inertial_el = link_el.find("inertial")
        inertial = Inertial() if inertial_el is None else self._inertial(inertial_el, name)
        return Link(
            name=name,
            anchor=anchor_id,
            visuals=visuals,
            collisions=collisions,
            inertial=inertial,
        )

    def _joint(
        self,
        spec: _JointSpec,
        link_ids: dict[str, EntityId],
        origin: EntityId,
    ) -> Joint:
        axis: Vector3 | None = None
        limits: JointLimits | None = None
        if spec.kind.uses_axis:
            axis_el = spec.element.find("axis")
            axis = _DEFAULT_AXIS if axis_el is None else _floats(
                axis_el.get("xyz", "1 0 0"), 3, f"joint '{spec.name}' axis"
            )
        if spec.kind.allows_limits:
            limit_el = spec.element.find("limit")
            if limit_el is not None:
                limits = self._limits(limit_el, spec)
        if spec.kind.requires_limits and limits is None:
            raise MalformedDocumentError(
                f"{spec.kind.value} joint '{spec.name}' has no <limit>", entity=spec.name
            )
        try:
            axis, limits = check_joint_motion(spec.name, spec.kind, axis, limits)
        except InvalidJointError as e:
            raise MalformedDocumentError(e.message, entity=spec.name) from e
        return Joint(
            name=spec.name,
            kind=spec.kind,
            parent=link_ids[spec.parent],
            child=link_ids[spec.child],
            origin=origin,
            axis=axis,
            limits=limits,
        )

    def _limits(self, limit_el: etree._Element, spec: _JointSpec) -> JointLimits:
        values = {
            key: _optional_float(limit_el, key, f"joint '{spec.name}' limit")
            for key in ("lower", "upper", "velocity", "effort")
        }
        limits = JointLimits(**values)
        return limits.scaled(self.scale) if spec.kind.is_linear else limits

    def _origin(self, el: etree._Element) -> Pose:
        origin_el = el.find("origin")
        if origin_el is None:
            return Pose()
        what = f"<{el.tag} name='{el.get('name', '')}'> origin"
        xyz = _floats(origin_el.get("xyz", "0 0 0"), 3, what)
        rpy = _floats(origin_el.get("rpy", "0 0 0"), 3, what)
        return Pose.from_xyz_rpy(xyz, rpy).scaled(self.scale)

    def _element(self, el: etree._Element, link_name: str, visual: bool) -> GeometryElement:
        geometry_el = el.find("geometry")
        if geometry_el is None or len(geometry_el) == 0:
            raise MalformedDocumentError(
                f"Link '{link_name}' has a <{el.tag}> without geometry", entity=link_name
            )
        material = None
        if visual:
            mat_el = el.find("material")
            if mat_el is not None:
                material = self._material(mat_el, link_name, top_level=False)
        return GeometryElement(
            name=el.get("name"),
            geometry=self._geometry(geometry_el[0], link_name),
            pose=self._origin(el),
            material=material,
        )

    def _geometry(self, shape: etree._Element, link_name: str):
        what = f"link '{link_name}' <{shape.tag}>"
        if shape.tag == "box":
            return Box(size=_floats(_required(shape, "size", what), 3, what)).scaled(self.scale)
        if shape.tag == "cylinder":
            return Cylinder(
                radius=_float(_required(shape, "radius", what), what),
                length=_float(_required(shape, "length", what), what),
            ).scaled(self.scale)
        if shape.tag == "sphere":
            return Sphere(radius=_float(_required(shape, "radius", what), what)).scaled(self.scale)
        if shape.tag == "mesh":
            source = _required(shape, "filename", what)
            scale_str = shape.get("scale")
            scale = _floats(scale_str, 3, what) if scale_str else None
            resolution = self.resolver.resolve(source)
            placeholder = isinstance(resolution, Missing)
            if placeholder:
                self._warn(link_name, f"Mesh '{source}' unavailable ({resolution.reason})")
            return Mesh(source=source, scale=scale, placeholder=placeholder).scaled(self.scale)
        raise MalformedDocumentError(
            f"Unsupported geometry <{shape.tag}> in {what}", entity=link_name
        )

    def _material(self, mat_el: etree._Element, owner: str, top_level: bool) -> Material:
        name = mat_el.get("name")
        if top_level and not name:
            raise MalformedDocumentError("Robot-level <material> without a name", entity=owner)
        color_el = mat_el.find("color")
        texture_el = mat_el.find("texture")
        rgba = None
        if color_el is not None:
            what = f"material '{name}'"
            rgba = _floats(_required(color_el, "rgba", what), 4, what)
        texture = texture_el.get("filename") if texture_el is not None else None

        if not top_level and rgba is None and texture is None and name:
            known = self.materials.get(name)
            if known is not None:
                return known
            self._warn(owner, f"Unknown material '{name}'")
        return Material(name=name, rgba=rgba, texture=texture)

    def _inertial(self, el: etree._Element, link_name: str) -> Inertial:
        what = f"link '{link_name}' inertial"
        mass_el = el.find("mass")
        mass = 0.0 if mass_el is None else _float(_required(mass_el, "value", what), what)
        if mass < 0:
            raise MalformedDocumentError(f"Negative mass in {what}", entity=link_name)
        inertia_el = el.find("inertia")
        tensor = {}
        for key in ("ixx", "ixy", "ixz", "iyy", "iyz", "izz"):
            raw = inertia_el.get(key) if inertia_el is not None else None
            tensor[key] = 0.0 if raw is None else _float(raw, what)
        return Inertial(mass=mass, **tensor).scaled(self.scale).model_copy(
            update={"center": self._origin(el)}
        )

    def _warn(self, element: str, message: str) -> None:
        logger.warning("URDF import: %s: %s", element, message)
        self.warnings.append(ImportIssue(element=element, message=message))


# ------------------------------------------------------------------
# Tree checks
# ------------------------------------------------------------------


def _check_tree(
    links: dict[str, etree._Element],
    joints: list[_JointSpec],
) -> tuple[str, list[str], dict[str, _JointSpec]]:
    """Find the single root and a breadth-first link order.

    Returns:
        (root link name, BFS order, child link name → parent joint).
    """
    parent_joint: dict[str, _JointSpec] = {}
    children: dict[str, list[str]] = {name: [] for name in links}
    for spec in joints:
        if spec.child in parent_joint:
            raise CyclicTopologyError(
                f"Malformed kinematic tree: link '{spec.child}' has two parent joints "
                f"('{parent_joint[spec.child].name}' and '{spec.name}')",
                entity=[spec.child],
            )
        parent_joint[spec.child] = spec
        children[spec.parent].append(spec.child)

    roots = [name for name in links if name not in parent_joint]
    if len(roots) != 1:
        detail = "no root link" if not roots else f"{len(roots)} root links"
        raise CyclicTopologyError(
            f"Malformed kinematic tree: {detail} ({', '.join(roots) or 'every link has a parent'})",
            entity=roots or sorted(links),
        )

    order: list[str] = []
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        order.append(current)
        queue.extend(children[current])

    if len(order) != len(links):
        cyclic = sorted(set(links) - set(order))
        raise CyclicTopologyError(
            f"Malformed kinematic tree: cycle through links {', '.join(cyclic)}",
            entity=cyclic,
        )
    return roots[0], order, parent_joint


# ------------------------------------------------------------------
# Attribute helpers
# ------------------------------------------------------------------


def _required(el: etree._Element, attr: str, what: str) -> str:
    value = el.get(attr)
    if value is None or not value.strip():
        raise MalformedDocumentError(f"{what} is missing attribute '{attr}'", entity=what)
    return value


def _float(text: str, what: str) -> float:
    try:
        value = float(text)
    except ValueError as e:
        raise MalformedDocumentError(f"Bad number '{text}' in {what}", entity=what) from e
    if not math.isfinite(value):
        raise MalformedDocumentError(f"Non-finite number '{text}' in {what}", entity=what)
    return value


def _floats(text: str, count: int, what: str) -> tuple[float, ...]:
    parts = text.split()
    if len(parts) != count:
        raise MalformedDocumentError(
            f"Expected {count} numbers in {what}, got '{text}'", entity=what
        )
    return tuple(_float(p, what) for p in parts)


def _optional_float(el: etree._Element, attr: str, what: str) -> float | None:
    raw = el.get(attr)
    return None if raw is None else _float(raw, what)
