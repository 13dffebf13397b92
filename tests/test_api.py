"""Integration tests for the FastAPI routes.

Uses monkeypatching to redirect the config and workcell directories to
tmp_path and to install a fresh EditorSession, isolating each test from
real data on disk.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture()
def isolated_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """Create an isolated FastAPI TestClient with tmp_path for all data dirs."""
    import workcell_editor.config as config_mod
    import workcell_editor.state as state_mod
    from workcell_editor.config import EditorSettings

    monkeypatch.setattr(config_mod, "CONFIG_PATH", tmp_path / "settings.yaml")
    monkeypatch.setattr(config_mod, "CONFIG_EXAMPLE_PATH", tmp_path / "nope.yaml")
    monkeypatch.setattr(state_mod, "WORKCELLS_DIR", tmp_path / "workcells")

    # Fresh session singleton to prevent cross-test pollution
    session = state_mod.EditorSession(EditorSettings(jobWorkers=1))
    monkeypatch.setattr(state_mod, "_session", session)

    from workcell_editor.api.app import app

    yield TestClient(app)
    session.shutdown()


def _anchor(client: TestClient, name: str, z: float = 0.0, parent: int | None = None) -> int:
    r = client.post(
        "/workcell/anchors",
        json={"name": name, "parent": parent, "pose": {"translation": [0, 0, z]}},
    )
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _link(client: TestClient, name: str, anchor: int) -> int:
    r = client.post(
        "/workcell/links",
        json={
            "name": name,
            "anchor": anchor,
            "visuals": [{"geometry": {"type": "box", "size": [0.1, 0.1, 0.1]}}],
        },
    )
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _fixed(client: TestClient, parent: int, child: int, origin: int, name: str) -> int:
    r = client.post(
        "/workcell/joints",
        json={"parent": parent, "child": child, "kind": "fixed", "origin": origin, "name": name},
    )
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _two_link_cell(client: TestClient) -> dict[str, int]:
    table = _anchor(client, "table", z=0.8)
    flange = _anchor(client, "flange", z=0.2, parent=table)
    base = _link(client, "base", table)
    tool = _link(client, "tool", flange)
    joint = _fixed(client, base, tool, flange, "mount")
    return {"table": table, "flange": flange, "base": base, "tool": tool, "joint": joint}


def _wait_for(client: TestClient, job_id: str) -> dict:
    deadline = time.monotonic() + 5.0
    while time.monotonic() < deadline:
        state = client.get(f"/jobs/{job_id}").json()
        if state["status"] != "pending":
            return state
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------


def test_health(isolated_app: TestClient) -> None:
    r = isolated_app.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_session_info(isolated_app: TestClient) -> None:
    data = isolated_app.get("/session").json()
    assert data["document"] == "workcell"
    assert data["entities"] == 0
    assert data["canUndo"] is False


# ------------------------------------------------------------------
# Editing
# ------------------------------------------------------------------


def test_build_cell_and_read_document(isolated_app: TestClient) -> None:
    ids = _two_link_cell(isolated_app)

    doc = isolated_app.get("/workcell").json()
    assert set(doc["anchors"]) == {str(ids["table"]), str(ids["flange"])}
    assert doc["joints"][str(ids["joint"])]["child"] == str(ids["tool"])
    assert doc["anchors"][str(ids["flange"])]["parent"] == str(ids["table"])


def test_reverse_joint_is_conflict(isolated_app: TestClient) -> None:
    ids = _two_link_cell(isolated_app)
    r = isolated_app.post(
        "/workcell/joints",
        json={"parent": ids["tool"], "child": ids["base"], "kind": "fixed",
              "origin": ids["table"]},
    )
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["error"] == "CyclicTopologyError"
    assert detail["rule"] == "acyclic"


def test_missing_reference_is_not_found(isolated_app: TestClient) -> None:
    r = isolated_app.post("/workcell/links", json={"anchor": 99, "name": "ghost"})
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "DanglingReferenceError"


def test_invalid_joint_is_unprocessable(isolated_app: TestClient) -> None:
    ids = _two_link_cell(isolated_app)
    isolated_app.delete(f"/workcell/joints/{ids['joint']}")
    r = isolated_app.post(
        "/workcell/joints",
        json={"parent": ids["base"], "child": ids["tool"], "kind": "fixed",
              "origin": ids["flange"], "axis": [0, 0, 1]},
    )
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "InvalidJointError"


def test_anchor_in_use_until_link_removed(isolated_app: TestClient) -> None:
    ids = _two_link_cell(isolated_app)
    r = isolated_app.delete(f"/workcell/anchors/{ids['flange']}")
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "ReferencedEntityInUseError"

    # Link removal needs an explicit cascade mode
    assert isolated_app.delete(f"/workcell/links/{ids['tool']}").status_code == 422
    r = isolated_app.delete(f"/workcell/links/{ids['tool']}", params={"mode": "subtree"})
    assert r.status_code == 200
    assert isolated_app.delete(f"/workcell/anchors/{ids['flange']}").status_code == 200


def test_move_rename_and_motion(isolated_app: TestClient) -> None:
    ids = _two_link_cell(isolated_app)
    r = isolated_app.patch(
        f"/workcell/anchors/{ids['table']}/pose", json={"pose": {"translation": [1, 2, 3]}}
    )
    assert r.status_code == 200
    r = isolated_app.patch(f"/workcell/entities/{ids['tool']}/name", json={"name": "gripper"})
    assert r.status_code == 200
    r = isolated_app.patch(
        f"/workcell/joints/{ids['joint']}/motion",
        json={"kind": "revolute", "axis": [0, 0, 1], "limits": {"lower": -1, "upper": 1}},
    )
    assert r.status_code == 200, r.text

    doc = isolated_app.get("/workcell").json()
    assert doc["anchors"][str(ids["table"])]["pose"]["translation"] == [1.0, 2.0, 3.0]
    assert doc["links"][str(ids["tool"])]["name"] == "gripper"
    assert doc["joints"][str(ids["joint"])]["kind"] == "revolute"


def test_undo_redo(isolated_app: TestClient) -> None:
    anchor = _anchor(isolated_app, "a")

    r = isolated_app.post("/workcell/undo")
    data = r.json()
    assert data["applied"] is True
    assert data["label"] == "Create anchor 'a'"
    assert data["canRedo"] is True
    assert str(anchor) not in isolated_app.get("/workcell").json()["anchors"]

    assert isolated_app.post("/workcell/undo").json()["applied"] is False

    assert isolated_app.post("/workcell/redo").json()["applied"] is True
    assert str(anchor) in isolated_app.get("/workcell").json()["anchors"]


# ------------------------------------------------------------------
# Documents
# ------------------------------------------------------------------


def test_save_and_load(isolated_app: TestClient, tmp_path: Path) -> None:
    _two_link_cell(isolated_app)
    r = isolated_app.post("/workcell/save", json={})
    assert r.status_code == 200
    assert r.json()["name"] == "workcell"
    assert r.json()["path"] == str(tmp_path / "workcells" / "workcell.json")

    r = isolated_app.post("/workcell/save", json={"name": "line_2.json"})
    assert r.json()["path"] == str(tmp_path / "workcells" / "line_2.json")
    assert isolated_app.get("/workcell/documents").json() == ["line_2", "workcell"]

    r = isolated_app.post("/workcell/new", json={"name": "scratch", "unit": "mm"})
    assert r.json()["entities"] == 0
    assert r.json()["unit"] == "mm"

    r = isolated_app.post("/workcell/load", json={"name": "workcell"})
    assert r.status_code == 200
    assert r.json()["entities"] == 5


def test_load_errors(isolated_app: TestClient, tmp_path: Path) -> None:
    assert isolated_app.post("/workcell/load", json={}).status_code == 422
    missing = isolated_app.post("/workcell/load", json={"name": "nope"})
    assert missing.status_code == 404

    (tmp_path / "workcells").mkdir()
    (tmp_path / "workcells" / "bad.json").write_text('{"format_version": 99}')
    r = isolated_app.post("/workcell/load", json={"name": "bad"})
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "MalformedDocumentError"


@pytest.mark.parametrize(
    "name", ["", " ", "..", "../settings", "/etc/passwd", "sub/cell", "..\\cell", "a\x00b"]
)
def test_document_names_stay_in_workcells_dir(
    isolated_app: TestClient, tmp_path: Path, name: str
) -> None:
    (tmp_path / "settings.json").write_text("{}")
    for route in ("/workcell/save", "/workcell/load"):
        r = isolated_app.post(route, json={"name": name})
        assert r.status_code == 422, (route, r.text)
        detail = r.json()["detail"]
        assert detail["error"] == "InvalidArgumentError"
        assert detail["rule"] == "document_name"
    assert not (tmp_path / "workcells").exists()


# ------------------------------------------------------------------
# Jobs
# ------------------------------------------------------------------


def test_import_then_merge(isolated_app: TestClient, arm_urdf: str) -> None:
    anchor = _anchor(isolated_app, "bench")
    r = isolated_app.post("/jobs/import", json={"content": arm_urdf})
    assert r.status_code == 200
    job_id = r.json()["jobId"]

    state = _wait_for(isolated_app, job_id)
    assert state["status"] == "done"
    assert state["result"]["name"] == "arm"
    assert state["result"]["entities"] == 11
    assert [w["element"] for w in state["warnings"]] == ["forearm", "tool"]

    r = isolated_app.post(
        f"/jobs/{job_id}/merge", json={"prefix": "arm_", "parentAnchor": anchor}
    )
    assert r.status_code == 200, r.text
    assert len(r.json()["idMap"]) == 11

    doc = isolated_app.get("/workcell").json()
    names = {link["name"] for link in doc["links"].values()}
    assert "arm_base_link" in names

    # The whole merge is one undo step
    assert isolated_app.post("/workcell/undo").json()["label"] == "Merge 'arm'"
    assert isolated_app.get("/workcell").json()["links"] == {}


def test_failed_import_merge_is_rejected(isolated_app: TestClient) -> None:
    job_id = isolated_app.post("/jobs/import", json={"content": "<robot"}).json()["jobId"]
    state = _wait_for(isolated_app, job_id)
    assert state["status"] == "failed"
    assert state["error"]

    r = isolated_app.post(f"/jobs/{job_id}/merge", json={})
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "MalformedDocumentError"


def test_merge_of_crashed_import_is_job_error(
    isolated_app: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    from workcell_editor.io import UrdfImporter

    def crash(self, source):
        raise RuntimeError("parser crashed")

    monkeypatch.setattr(UrdfImporter, "parse", crash)
    job_id = isolated_app.post("/jobs/import", json={"content": "<robot/>"}).json()["jobId"]
    assert _wait_for(isolated_app, job_id)["status"] == "failed"

    r = isolated_app.post(f"/jobs/{job_id}/merge", json={})
    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["error"] == "JobError"
    assert detail["rule"] == "failed"
    assert "parser crashed" in detail["message"]


def test_export_urdf(isolated_app: TestClient) -> None:
    _two_link_cell(isolated_app)
    r = isolated_app.post("/jobs/export", json={"format": "urdf", "worldFrame": "world"})
    job_id = r.json()["jobId"]

    state = _wait_for(isolated_app, job_id)
    assert state["status"] == "done"
    assert '<link name="world"' in state["result"]
    assert '<joint name="mount" type="fixed">' in state["result"]

    jobs = isolated_app.get("/jobs").json()
    assert [j["jobId"] for j in jobs] == [job_id]


def test_export_unsupported_topology_fails(isolated_app: TestClient) -> None:
    table = _anchor(isolated_app, "table")
    _link(isolated_app, "a", table)
    _link(isolated_app, "b", table)
    job_id = isolated_app.post("/jobs/export", json={}).json()["jobId"]
    state = _wait_for(isolated_app, job_id)
    assert state["status"] == "failed"
    assert "single kinematic tree" in state["error"]


def test_unknown_job(isolated_app: TestClient) -> None:
    assert isolated_app.get("/jobs/nope").status_code == 404
    assert isolated_app.post("/jobs/nope/cancel").status_code == 404
