"""Workcell routes — entity editing, undo/redo and document save/load.

Handlers are ``async`` so every edit runs on the event loop, one at a time;
the editor is single-writer. Rejected edits raise ``WorkcellError`` and are
turned into error responses by the app-level handler.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from workcell_editor.api.schemas import (
    AnchorCreate,
    AnchorMove,
    AnchorReparent,
    CreatedResponse,
    EditResponse,
    JointCreate,
    JointMotionUpdate,
    JointReparent,
    LinkCreate,
    LoadDocumentRequest,
    ModelInstanceCreate,
    NewDocumentRequest,
    RenameRequest,
    SaveDocumentRequest,
)
from workcell_editor.io import site_codec
from workcell_editor.model import CascadeMode, ChangeSet

logger = logging.getLogger(__name__)

router = APIRouter()


def _editor():
    from workcell_editor.state import get_session

    return get_session().editor


def _edit_response(changeset: ChangeSet | None = None, applied: bool = True) -> EditResponse:
    editor = _editor()
    return EditResponse(
        applied=applied,
        label=changeset.label if changeset is not None else None,
        can_undo=editor.can_undo,
        can_redo=editor.can_redo,
    )


# ------------------------------------------------------------------
# Document
# ------------------------------------------------------------------


@router.get("")
async def get_workcell() -> dict:
    """The live workcell in site-document form."""
    return site_codec.to_document(_editor().workcell).model_dump(mode="json")


@router.post("/new")
async def new_workcell(request: NewDocumentRequest) -> dict:
    """Discard the open document and start an empty one."""
    from workcell_editor.state import get_session

    session = get_session()
    session.new_document(request.name, request.unit, request.up_axis)
    return session.get_status_dict()


@router.get("/documents")
async def list_workcells() -> list[str]:
    """Names of the documents saved in the workcells directory."""
    from workcell_editor.state import list_documents

    return list_documents()


@router.post("/save")
async def save_workcell(request: SaveDocumentRequest) -> dict[str, str]:
    """Save the open document by name. Names never resolve outside the workcells directory."""
    from workcell_editor.state import document_path, get_session

    path = document_path(request.name) if request.name is not None else None
    path = get_session().save_document(path)
    return {"status": "saved", "name": path.stem, "path": str(path)}


@router.post("/load")
async def load_workcell(request: LoadDocumentRequest) -> dict:
    """Open a saved document by name. The current document stays open if loading fails."""
    from workcell_editor.state import document_path, get_session

    path = document_path(request.name)
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"Document '{request.name}' not found")
    session = get_session()
    session.open_document(path)
    return session.get_status_dict()


# ------------------------------------------------------------------
# Anchors
# ------------------------------------------------------------------


@router.post("/anchors")
async def create_anchor(request: AnchorCreate) -> CreatedResponse:
    anchor_id = _editor().create_anchor(request.pose, request.name, request.parent)
    return CreatedResponse(id=anchor_id)


@router.patch("/anchors/{anchor_id}/pose")
async def move_anchor(anchor_id: int, request: AnchorMove) -> EditResponse:
    _editor().move_anchor(anchor_id, request.pose)
    return _edit_response()


@router.post("/anchors/{anchor_id}/parent")
async def reparent_anchor(anchor_id: int, request: AnchorReparent) -> EditResponse:
    _editor().reparent_anchor(anchor_id, request.parent, request.keep_world_pose)
    return _edit_response()


@router.delete("/anchors/{anchor_id}")
async def remove_anchor(anchor_id: int, replacement: int | None = None) -> EditResponse:
    """Remove an anchor, optionally handing its dependents to ``replacement``."""
    _editor().remove_anchor(anchor_id, replacement)
    return _edit_response()


# ------------------------------------------------------------------
# Links
# ------------------------------------------------------------------


@router.post("/links")
async def create_link(request: LinkCreate) -> CreatedResponse:
    link_id = _editor().create_link(
        request.anchor,
        request.visuals,
        name=request.name,
        collisions=request.collisions,
        inertial=request.inertial,
        offset=request.offset,
    )
    return CreatedResponse(id=link_id)


@router.delete("/links/{link_id}")
async def remove_link(link_id: int, mode: CascadeMode) -> EditResponse:
    """Remove a link. ``mode`` is required: ``reparent`` or ``subtree``."""
    _editor().remove_link(link_id, mode)
    return _edit_response()


# ------------------------------------------------------------------
# Joints
# ------------------------------------------------------------------


@router.post("/joints")
async def create_joint(request: JointCreate) -> CreatedResponse:
    joint_id = _editor().create_joint(
        request.parent,
        request.child,
        request.kind,
        request.origin,
        name=request.name,
        axis=request.axis,
        limits=request.limits,
    )
    return CreatedResponse(id=joint_id)


@router.patch("/joints/{joint_id}/motion")
async def set_joint_motion(joint_id: int, request: JointMotionUpdate) -> EditResponse:
    # Only fields present in the body are changed; an explicit null clears.
    fields = request.model_dump(exclude_unset=True)
    _editor().set_joint_motion(
        joint_id,
        kind=fields.get("kind"),
        **{key: getattr(request, key) for key in ("axis", "limits") if key in fields},
    )
    return _edit_response()


@router.post("/joints/{joint_id}/parent")
async def reparent_joint(joint_id: int, request: JointReparent) -> EditResponse:
    _editor().reparent_joint(joint_id, request.parent)
    return _edit_response()


@router.delete("/joints/{joint_id}")
async def remove_joint(joint_id: int) -> EditResponse:
    _editor().remove_joint(joint_id)
    return _edit_response()


# ------------------------------------------------------------------
# Model instances and names
# ------------------------------------------------------------------


@router.post("/models")
async def create_model_instance(request: ModelInstanceCreate) -> CreatedResponse:
    model_id = _editor().create_model_instance(
        request.asset,
        request.anchor,
        name=request.name,
        scale=request.scale,
        offset=request.offset,
    )
    return CreatedResponse(id=model_id)


@router.delete("/models/{model_id}")
async def remove_model_instance(model_id: int) -> EditResponse:
    _editor().remove_model_instance(model_id)
    return _edit_response()


@router.patch("/entities/{entity_id}/name")
async def rename_entity(entity_id: int, request: RenameRequest) -> EditResponse:
    _editor().rename(entity_id, request.name)
    return _edit_response()


# ------------------------------------------------------------------
# Undo / redo
# ------------------------------------------------------------------


@router.post("/undo")
async def undo() -> EditResponse:
    """Undo the last edit. ``applied`` is false when there was nothing to undo."""
    changeset = _editor().undo()
    return _edit_response(changeset, applied=changeset is not None)


@router.post("/redo")
async def redo() -> EditResponse:
    changeset = _editor().redo()
    return _edit_response(changeset, applied=changeset is not None)
