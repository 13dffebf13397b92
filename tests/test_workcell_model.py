"""Tests for the workcell aggregate, change sets and whole-state integrity checks."""

from __future__ import annotations

import numpy as np
import pytest
from pydantic import ValidationError

from workcell_editor.errors import (
    CyclicTopologyError,
    DanglingReferenceError,
    DuplicateIdentifierError,
    InvalidArgumentError,
    InvalidJointError,
    WorkcellError,
)
from workcell_editor.geometry import Pose
from workcell_editor.model import (
    Anchor,
    Box,
    EntityKind,
    GeometryElement,
    Inertial,
    Joint,
    JointKind,
    JointLimits,
    Link,
    ModelInstance,
    ProposedWorkcell,
    Workcell,
    validate_workcell,
)


def _build(**entities) -> Workcell:
    """Workcell holding ``entities`` keyed ``e<id>``, applied without validation."""
    wc = Workcell()
    proposed = ProposedWorkcell(wc)
    for key, entity in entities.items():
        proposed.put(int(key[1:]), entity)
    proposed.to_changeset("build").apply_to(wc)
    return wc


# ------------------------------------------------------------------
# Entities
# ------------------------------------------------------------------


def test_entity_references() -> None:
    joint = Joint(name="j", kind=JointKind.FIXED, parent=1, child=2, origin=3)
    refs = {(field, kind, eid) for field, kind, eid in joint.references()}
    assert refs == {
        ("parent", EntityKind.LINK, 1),
        ("child", EntityKind.LINK, 2),
        ("origin", EntityKind.ANCHOR, 3),
    }
    assert Anchor(name="a").references() == []


def test_entities_are_frozen() -> None:
    anchor = Anchor(name="a")
    with pytest.raises(ValidationError):
        anchor.name = "b"  # type: ignore[misc]


def test_inertial_rejects_negative_mass() -> None:
    with pytest.raises(ValueError):
        Inertial(mass=-1.0)


def test_link_scaled() -> None:
    link = Link(
        name="l",
        anchor=1,
        offset=Pose.from_translation(1.0, 0.0, 0.0),
        visuals=(GeometryElement(geometry=Box(size=(1.0, 1.0, 1.0))),),
        inertial=Inertial(mass=2.0, ixx=1.0, center=Pose.from_translation(0.0, 1.0, 0.0)),
    )
    scaled = link.scaled(10.0)
    assert scaled.offset.translation == (10.0, 0.0, 0.0)
    assert scaled.visuals[0].geometry.size == (10.0, 10.0, 10.0)
    assert scaled.inertial.mass == 2.0
    assert scaled.inertial.ixx == pytest.approx(100.0)
    assert scaled.inertial.center.translation == (0.0, 10.0, 0.0)


def test_revolute_limits_not_scaled() -> None:
    limits = JointLimits(lower=-1.0, upper=1.0)
    revolute = Joint(name="r", kind="revolute", parent=1, child=2, origin=3,
                     axis=(0.0, 0.0, 1.0), limits=limits)
    assert revolute.scaled(1000.0).limits == limits
    prismatic = revolute.model_copy(update={"kind": JointKind.PRISMATIC})
    assert prismatic.scaled(1000.0).limits.upper == pytest.approx(1000.0)


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


def test_world_pose_composes_chain() -> None:
    wc = _build(
        e1=Anchor(name="base", pose=Pose.from_xyz_rpy((1, 0, 0), (0, 0, np.pi / 2))),
        e2=Anchor(name="tool", pose=Pose.from_translation(1, 0, 0), parent=1),
        e3=Link(name="l", anchor=2, offset=Pose.from_translation(0, 0, 1)),
    )
    assert np.allclose(wc.world_pose(2).translation, (1.0, 1.0, 0.0))
    assert np.allclose(wc.link_pose(3).translation, (1.0, 1.0, 1.0))
    assert wc.anchor_chain(2) == [2, 1]


def test_world_pose_missing_anchor() -> None:
    with pytest.raises(KeyError):
        Workcell().world_pose(7)


def test_referents_and_kinematics() -> None:
    wc = _build(
        e1=Anchor(name="a"),
        e2=Anchor(name="b", parent=1),
        e3=Link(name="l1", anchor=1),
        e4=Link(name="l2", anchor=2),
        e5=Joint(name="j", kind="fixed", parent=3, child=4, origin=1),
        e6=ModelInstance(name="m", asset="x.stl", anchor=1),
    )
    assert wc.referents(1) == [
        (EntityKind.ANCHOR, 2),
        (EntityKind.LINK, 3),
        (EntityKind.JOINT, 5),
        (EntityKind.MODEL_INSTANCE, 6),
    ]
    assert wc.root_links() == [3]
    assert wc.parent_link(4) == 3
    assert wc.descendants(3) == [4]
    assert wc.child_anchors(1) == [2]


def test_find_by_name() -> None:
    wc = _build(e1=Anchor(name="a"), e2=Link(name="a", anchor=1))
    assert wc.find_anchor_by_name("a") == 1
    assert wc.find_link_by_name("a") == 2
    assert wc.find_joint_by_name("a") is None


def test_copy_is_independent_but_equal() -> None:
    wc = _build(e1=Anchor(name="a"))
    clone = wc.copy()
    assert clone == wc
    proposed = ProposedWorkcell(clone)
    proposed.delete(EntityKind.ANCHOR, 1)
    proposed.to_changeset("rm").apply_to(clone)
    assert 1 in wc.anchors
    assert clone != wc


def test_applied_ids_advance_allocator() -> None:
    wc = _build(e17=Anchor(name="a"))
    assert wc.new_id() == 18


# ------------------------------------------------------------------
# Change sets
# ------------------------------------------------------------------


def test_proposed_overlay_does_not_touch_base() -> None:
    wc = _build(e1=Anchor(name="a"))
    proposed = ProposedWorkcell(wc)
    proposed.put(2, Anchor(name="b"))
    proposed.delete(EntityKind.ANCHOR, 1)

    assert set(proposed.anchors) == {2}
    assert set(wc.anchors) == {1}


def test_changeset_inverse_restores_state() -> None:
    wc = _build(e1=Anchor(name="a"))
    before = wc.copy()
    proposed = ProposedWorkcell(wc)
    proposed.put(1, Anchor(name="renamed"))
    proposed.put(2, Anchor(name="b"))
    changeset = proposed.to_changeset("edit")
    assert changeset.created() == [2]
    assert changeset.inverted().removed() == [2]

    changeset.apply_to(wc)
    changeset.inverted().apply_to(wc)
    assert wc.same_state(before)


def test_changeset_drops_noop_entries() -> None:
    wc = _build(e1=Anchor(name="a"))
    proposed = ProposedWorkcell(wc)
    proposed.put(1, Anchor(name="a"))
    assert not proposed.to_changeset("noop")


# ------------------------------------------------------------------
# Whole-state validation
# ------------------------------------------------------------------


def test_valid_workcell_passes() -> None:
    wc = _build(
        e1=Anchor(name="a"),
        e2=Link(name="l1", anchor=1),
        e3=Link(name="l2", anchor=1),
        e4=Joint(name="j", kind="revolute", parent=2, child=3, origin=1,
                 axis=(0.0, 0.0, 1.0), limits=JointLimits(lower=-1.0, upper=1.0)),
    )
    validate_workcell(wc)


def test_validate_dangling_reference() -> None:
    wc = _build(e1=Link(name="l", anchor=9))
    with pytest.raises(DanglingReferenceError) as exc_info:
        validate_workcell(wc)
    assert exc_info.value.entity == 1


def test_validate_anchor_cycle() -> None:
    wc = _build(e1=Anchor(name="a", parent=2), e2=Anchor(name="b", parent=1))
    with pytest.raises(CyclicTopologyError):
        validate_workcell(wc)


def test_validate_joint_cycle() -> None:
    wc = _build(
        e1=Anchor(name="a"),
        e2=Link(name="l1", anchor=1),
        e3=Link(name="l2", anchor=1),
        e4=Joint(name="j1", kind="fixed", parent=2, child=3, origin=1),
        e5=Joint(name="j2", kind="fixed", parent=3, child=2, origin=1),
    )
    with pytest.raises(CyclicTopologyError):
        validate_workcell(wc)


def test_validate_duplicate_names() -> None:
    wc = _build(e1=Anchor(name="a"), e2=Anchor(name="a"))
    with pytest.raises(DuplicateIdentifierError):
        validate_workcell(wc)


def test_validate_non_unit_axis() -> None:
    wc = _build(
        e1=Anchor(name="a"),
        e2=Link(name="l1", anchor=1),
        e3=Link(name="l2", anchor=1),
        e4=Joint(name="j", kind="continuous", parent=2, child=3, origin=1, axis=(0.0, 0.0, 3.0)),
    )
    with pytest.raises(InvalidJointError):
        validate_workcell(wc)


def test_error_payload() -> None:
    error = DanglingReferenceError("missing", entity={3, 1})
    assert isinstance(error, WorkcellError)
    assert error.to_dict() == {
        "error": "DanglingReferenceError",
        "rule": "reference_exists",
        "entity": [1, 3],
        "message": "missing",
    }


def _serial_chain(n: int) -> dict[str, object]:
    """One anchor, ``n`` links named ``l<i>`` and ``n - 1`` fixed joints in a line."""
    entities: dict[str, object] = {"e1": Anchor(name="a")}
    for i in range(n):
        entities[f"e{10 + i}"] = Link(name=f"l{i}", anchor=1)
    for i in range(1, n):
        entities[f"e{10 + n + i}"] = Joint(
            name=f"j{i}", kind="fixed", parent=10 + i - 1, child=10 + i, origin=1
        )
    return entities


def test_validate_long_serial_chain(monkeypatch: pytest.MonkeyPatch) -> None:
    wc = _build(**_serial_chain(2000))
    built = []
    original = Workcell.joint_index
    monkeypatch.setattr(Workcell, "joint_index", lambda self: built.append(1) or original(self))

    validate_workcell(wc)
    assert len(built) == 1
    assert wc.descendants(10)[-1] == 2009


def test_long_chain_closing_joint_is_cycle() -> None:
    n = 500
    wc = _build(
        **_serial_chain(n),
        e9999=Joint(name="back", kind="fixed", parent=10 + n - 1, child=10, origin=1),
    )
    with pytest.raises(CyclicTopologyError):
        validate_workcell(wc)


def test_long_chain_second_parent_is_rejected() -> None:
    n = 500
    wc = _build(
        **_serial_chain(n),
        e9999=Joint(name="extra", kind="fixed", parent=10, child=10 + n - 1, origin=1),
    )
    with pytest.raises(CyclicTopologyError) as exc_info:
        validate_workcell(wc)
    assert exc_info.value.entity[0] == 10 + n - 1


def test_long_chain_duplicate_name() -> None:
    entities = _serial_chain(500)
    entities["e509"] = Link(name="l0", anchor=1)
    wc = _build(**entities)
    with pytest.raises(DuplicateIdentifierError):
        validate_workcell(wc)


def test_validate_empty_name() -> None:
    wc = _build(e1=Anchor(name=" "))
    with pytest.raises(InvalidArgumentError) as exc_info:
        validate_workcell(wc)
    assert exc_info.value.rule == "name_not_empty"


def test_revolute_without_limits_is_invalid_document() -> None:
    wc = _build(
        e1=Anchor(name="a"),
        e2=Link(name="l1", anchor=1),
        e3=Link(name="l2", anchor=1),
        e4=Joint(name="j", kind="revolute", parent=2, child=3, origin=1, axis=(0.0, 0.0, 1.0)),
    )
    with pytest.raises(InvalidJointError, match="requires limits"):
        validate_workcell(wc)
