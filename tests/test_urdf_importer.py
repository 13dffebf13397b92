"""Tests for the URDF importer: structure, units, assets and malformed input."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from workcell_editor.errors import (
    CyclicTopologyError,
    DuplicateIdentifierError,
    MalformedDocumentError,
    UnresolvedNameError,
)
from workcell_editor.geometry import LengthUnit
from workcell_editor.io import MappingAssetResolver, UrdfImporter, site_codec
from workcell_editor.model import Box, JointKind, Mesh


def _robot(body: str) -> str:
    return f'<robot name="r">{body}</robot>'


# ------------------------------------------------------------------
# Structure
# ------------------------------------------------------------------


def test_import_builds_anchor_per_link(arm_urdf: str) -> None:
    result = UrdfImporter(MappingAssetResolver()).parse(arm_urdf)
    wc = result.workcell

    assert wc.metadata.name == "arm"
    assert len(wc.links) == 4
    assert len(wc.joints) == 3
    assert {a.name for a in wc.anchors.values()} == {"base_link", "upper_arm", "forearm", "tool"}
    assert wc.links[result.root_link].name == "base_link"
    assert wc.root_links() == [result.root_link]


def test_anchor_hierarchy_mirrors_joint_tree(arm_urdf: str) -> None:
    wc = UrdfImporter(MappingAssetResolver()).parse(arm_urdf).workcell
    base = wc.find_anchor_by_name("base_link")
    upper = wc.find_anchor_by_name("upper_arm")
    forearm = wc.find_anchor_by_name("forearm")

    assert wc.anchors[base].parent is None
    assert wc.anchors[upper].parent == base
    assert wc.anchors[forearm].parent == upper
    # Joint origins compose: shoulder yaws 90 degrees, so the 0.4 m x offset lands on +y
    assert np.allclose(wc.world_pose(forearm).translation, (0.0, 0.4, 0.1), atol=1e-9)


def test_joint_origin_is_child_anchor(arm_urdf: str) -> None:
    wc = UrdfImporter(MappingAssetResolver()).parse(arm_urdf).workcell
    shoulder = wc.joints[wc.find_joint_by_name("shoulder")]
    assert shoulder.origin == wc.links[shoulder.child].anchor
    assert shoulder.kind == JointKind.REVOLUTE
    assert shoulder.axis == (0.0, 0.0, 1.0)
    assert shoulder.limits.lower == -1.5
    assert shoulder.limits.velocity == 2.0


def test_prismatic_without_axis_defaults_to_x(arm_urdf: str) -> None:
    wc = UrdfImporter(MappingAssetResolver()).parse(arm_urdf).workcell
    assert wc.joints[wc.find_joint_by_name("extend")].axis == (1.0, 0.0, 0.0)


def test_geometry_materials_and_inertial(arm_urdf: str) -> None:
    result = UrdfImporter(MappingAssetResolver()).parse(arm_urdf)
    wc = result.workcell
    base = wc.links[wc.find_link_by_name("base_link")]

    visual = base.visuals[0]
    assert isinstance(visual.geometry, Box)
    assert visual.geometry.size == (0.2, 0.2, 0.1)
    assert visual.pose.translation == (0.0, 0.0, 0.05)
    assert visual.material.name == "grey"
    assert visual.material.rgba == (0.5, 0.5, 0.5, 1.0)
    assert len(base.collisions) == 1
    assert base.inertial.mass == 2.0
    assert base.inertial.center.translation == (0.0, 0.0, 0.05)


def test_link_without_inertial_gets_zero_mass(arm_urdf: str) -> None:
    wc = UrdfImporter(MappingAssetResolver()).parse(arm_urdf).workcell
    assert wc.links[wc.find_link_by_name("tool")].inertial.mass == 0.0


# ------------------------------------------------------------------
# Warnings and assets
# ------------------------------------------------------------------


def test_missing_mesh_becomes_placeholder_with_warning(arm_urdf: str) -> None:
    result = UrdfImporter(MappingAssetResolver()).parse(arm_urdf)
    tool = result.workcell.links[result.workcell.find_link_by_name("tool")]
    mesh = tool.visuals[0].geometry

    assert isinstance(mesh, Mesh)
    assert mesh.placeholder
    assert mesh.source == "package://arm/meshes/tool.stl"
    assert mesh.scale == (0.001, 0.001, 0.001)
    assert [w.element for w in result.warnings] == ["forearm", "tool"]


def test_resolved_mesh_has_no_warning(arm_urdf: str) -> None:
    resolver = MappingAssetResolver({"package://arm/meshes/tool.stl": b"solid tool"})
    result = UrdfImporter(resolver).parse(arm_urdf)
    tool = result.workcell.links[result.workcell.find_link_by_name("tool")]
    assert not tool.visuals[0].geometry.placeholder
    assert all(w.element != "tool" for w in result.warnings)


def test_unknown_material_warns(arm_urdf: str) -> None:
    result = UrdfImporter(MappingAssetResolver()).parse(arm_urdf)
    assert any("undeclared" in w.message for w in result.warnings)


def test_parse_path_resolves_relative_meshes(tmp_path: Path) -> None:
    (tmp_path / "meshes").mkdir()
    (tmp_path / "meshes" / "part.stl").write_bytes(b"solid part")
    urdf = tmp_path / "cell.urdf"
    urdf.write_text(_robot(
        '<link name="a"><visual><geometry><mesh filename="meshes/part.stl"/></geometry>'
        "</visual></link>"
    ))

    result = UrdfImporter().parse(urdf)
    assert result.warnings == []
    link = next(iter(result.workcell.links.values()))
    assert not link.visuals[0].geometry.placeholder


# ------------------------------------------------------------------
# Units
# ------------------------------------------------------------------


def test_import_into_millimetres(arm_urdf: str) -> None:
    result = UrdfImporter(MappingAssetResolver(), unit=LengthUnit.MILLIMETRE).parse(arm_urdf)
    wc = result.workcell

    assert wc.metadata.unit == LengthUnit.MILLIMETRE
    assert result.unit_scale == pytest.approx(1000.0)
    upper = wc.find_anchor_by_name("upper_arm")
    assert np.allclose(wc.anchors[upper].pose.translation, (0.0, 0.0, 100.0))
    extend = wc.joints[wc.find_joint_by_name("extend")]
    assert extend.limits.upper == pytest.approx(250.0)
    shoulder = wc.joints[wc.find_joint_by_name("shoulder")]
    assert shoulder.limits.upper == 1.5
    base = wc.links[wc.find_link_by_name("base_link")]
    assert base.inertial.ixx == pytest.approx(0.1 * 1e6)


# ------------------------------------------------------------------
# Malformed input
# ------------------------------------------------------------------


def test_invalid_xml() -> None:
    with pytest.raises(MalformedDocumentError):
        UrdfImporter().parse("<robot name='x'><link name='a'></robot>")


def test_root_element_must_be_robot() -> None:
    with pytest.raises(MalformedDocumentError):
        UrdfImporter().parse("<scene/>")


def test_no_links() -> None:
    with pytest.raises(MalformedDocumentError):
        UrdfImporter().parse(_robot(""))


def test_duplicate_link_names() -> None:
    with pytest.raises(DuplicateIdentifierError):
        UrdfImporter().parse(_robot('<link name="a"/><link name="a"/>'))


def test_joint_to_undefined_link() -> None:
    body = (
        '<link name="a"/>'
        '<joint name="j" type="fixed"><parent link="a"/><child link="ghost"/></joint>'
    )
    with pytest.raises(UnresolvedNameError) as exc_info:
        UrdfImporter().parse(_robot(body))
    assert exc_info.value.entity == "ghost"


def test_two_roots_rejected() -> None:
    with pytest.raises(CyclicTopologyError):
        UrdfImporter().parse(_robot('<link name="a"/><link name="b"/>'))


def test_cycle_rejected() -> None:
    body = (
        '<link name="root"/><link name="a"/><link name="b"/>'
        '<joint name="j0" type="fixed"><parent link="root"/><child link="a"/></joint>'
        '<joint name="j1" type="fixed"><parent link="a"/><child link="b"/></joint>'
        '<joint name="j2" type="fixed"><parent link="b"/><child link="a"/></joint>'
    )
    with pytest.raises(CyclicTopologyError):
        UrdfImporter().parse(_robot(body))


def test_unknown_joint_type() -> None:
    body = (
        '<link name="a"/><link name="b"/>'
        '<joint name="j" type="hinge"><parent link="a"/><child link="b"/></joint>'
    )
    with pytest.raises(MalformedDocumentError):
        UrdfImporter().parse(_robot(body))


def test_revolute_without_limit() -> None:
    body = (
        '<link name="a"/><link name="b"/>'
        '<joint name="j" type="revolute"><parent link="a"/><child link="b"/></joint>'
    )
    with pytest.raises(MalformedDocumentError):
        UrdfImporter().parse(_robot(body))


def test_bad_number() -> None:
    body = '<link name="a"><visual><geometry><sphere radius="big"/></geometry></visual></link>'
    with pytest.raises(MalformedDocumentError):
        UrdfImporter().parse(_robot(body))


# ------------------------------------------------------------------
# Scale
# ------------------------------------------------------------------


def test_long_serial_chain_imports_and_round_trips() -> None:
    n = 1500
    links = "".join(f'<link name="l{i}"/>' for i in range(n))
    joints = "".join(
        f'<joint name="j{i}" type="fixed"><parent link="l{i - 1}"/><child link="l{i}"/>'
        '<origin xyz="0 0 0.1"/></joint>'
        for i in range(1, n)
    )
    wc = UrdfImporter().parse(_robot(links + joints)).workcell
    assert len(wc.joints) == n - 1
    assert wc.world_pose(wc.find_anchor_by_name(f"l{n - 1}")).translation[2] == pytest.approx(
        0.1 * (n - 1)
    )
    assert site_codec.decode(site_codec.encode(wc)).same_state(wc)
