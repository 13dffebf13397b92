"""Tests for the undo/redo journal and its replay preconditions."""

from __future__ import annotations

import pytest

from workcell_editor.editing import Journal
from workcell_editor.errors import UndoPreconditionError
from workcell_editor.geometry import Pose
from workcell_editor.model import Anchor, Link, ProposedWorkcell, Workcell


def _commit(workcell: Workcell, journal: Journal | None, label: str, **entities) -> None:
    """Apply a change set putting ``entities`` (keyword ``e<id>``), optionally recording it."""
    proposed = ProposedWorkcell(workcell)
    for key, entity in entities.items():
        proposed.put(int(key[1:]), entity)
    changeset = proposed.to_changeset(label)
    changeset.apply_to(workcell)
    if journal is not None:
        journal.record(changeset)


def test_undo_redo_labels() -> None:
    wc, journal = Workcell(), Journal()
    _commit(wc, journal, "first", e1=Anchor(name="a"))
    _commit(wc, journal, "second", e2=Anchor(name="b"))
    assert journal.undo_labels == ["second", "first"]

    journal.undo(wc)
    assert journal.undo_labels == ["first"]
    assert journal.redo_labels == ["second"]
    assert 2 not in wc.anchors


def test_max_depth_drops_oldest() -> None:
    wc, journal = Workcell(), Journal(max_depth=2)
    for i in range(1, 4):
        _commit(wc, journal, f"edit {i}", **{f"e{i}": Anchor(name=f"a{i}")})
    assert journal.undo_labels == ["edit 3", "edit 2"]


def test_empty_changeset_not_recorded() -> None:
    wc, journal = Workcell(), Journal()
    journal.record(ProposedWorkcell(wc).to_changeset("nothing"))
    assert not journal.can_undo


def test_undo_fails_when_state_changed_externally() -> None:
    """A record whose prior state no longer matches is rejected with older history."""
    wc, journal = Workcell(), Journal()
    _commit(wc, journal, "create a", e1=Anchor(name="a"))
    _commit(wc, journal, "move a", e1=Anchor(name="a", pose=Pose.from_translation(1, 0, 0)))

    # Out-of-band edit the journal never saw
    _commit(wc, None, "rogue", e1=Anchor(name="a", pose=Pose.from_translation(9, 0, 0)))
    before = wc.copy()

    with pytest.raises(UndoPreconditionError) as exc_info:
        journal.undo(wc)
    assert exc_info.value.rule == "journal_precondition"
    assert wc.same_state(before)
    assert not journal.can_undo


def test_undo_rejected_when_it_would_dangle() -> None:
    """Undoing a creation is refused while something else references the entity."""
    wc, journal = Workcell(), Journal()
    _commit(wc, journal, "create anchor", e1=Anchor(name="a"))
    _commit(wc, None, "create link", e2=Link(name="l", anchor=1))

    with pytest.raises(UndoPreconditionError):
        journal.undo(wc)
    assert 1 in wc.anchors


def test_redo_fails_when_state_changed() -> None:
    wc, journal = Workcell(), Journal()
    _commit(wc, journal, "create a", e1=Anchor(name="a"))
    journal.undo(wc)
    _commit(wc, None, "rogue", e1=Anchor(name="other"))

    with pytest.raises(UndoPreconditionError):
        journal.redo(wc)
    assert not journal.can_redo
    assert wc.anchors[1].name == "other"


def test_clear() -> None:
    wc, journal = Workcell(), Journal()
    _commit(wc, journal, "create a", e1=Anchor(name="a"))
    journal.undo(wc)
    journal.clear()
    assert not journal.can_undo
    assert not journal.can_redo
