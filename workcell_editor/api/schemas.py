"""API request/response schemas for the editor frontend.

All use camelCase aliases for JSON serialization.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from workcell_editor.geometry import LengthUnit, Pose, UpAxis, Vector3
from workcell_editor.jobs import DocumentFormat
from workcell_editor.model import GeometryElement, Inertial, JointKind, JointLimits


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- Session ---


class NewDocumentRequest(_Schema):
    name: str = "workcell"
    unit: LengthUnit | None = None
    up_axis: UpAxis | None = Field(None, alias="upAxis")


class SaveDocumentRequest(_Schema):
    """Save target: a document name in the workcells directory.

    Defaults to where the open document came from, else its metadata name.
    """

    name: str | None = None


class LoadDocumentRequest(_Schema):
    name: str


class CreatedResponse(_Schema):
    id: int


class EditResponse(_Schema):
    """Outcome of undo/redo and other edits without a new id."""

    applied: bool = True
    label: str | None = None
    can_undo: bool = Field(alias="canUndo")
    can_redo: bool = Field(alias="canRedo")


# --- Entities ---


class AnchorCreate(_Schema):
    pose: Pose = Field(default_factory=Pose)
    name: str | None = None
    parent: int | None = None


class AnchorMove(_Schema):
    pose: Pose


class AnchorReparent(_Schema):
    parent: int | None = None
    keep_world_pose: bool = Field(True, alias="keepWorldPose")


class LinkCreate(_Schema):
    anchor: int
    name: str | None = None
    visuals: list[GeometryElement] = Field(default_factory=list)
    collisions: list[GeometryElement] = Field(default_factory=list)
    inertial: Inertial | None = None
    offset: Pose | None = None


class JointCreate(_Schema):
    parent: int
    child: int
    kind: JointKind
    origin: int
    name: str | None = None
    axis: Vector3 | None = None
    limits: JointLimits | None = None


class JointMotionUpdate(_Schema):
    """Fields left out keep their current value where the kind allows it."""

    kind: JointKind | None = None
    axis: Vector3 | None = None
    limits: JointLimits | None = None


class JointReparent(_Schema):
    parent: int


class ModelInstanceCreate(_Schema):
    asset: str
    anchor: int
    name: str | None = None
    scale: Vector3 | None = None
    offset: Pose | None = None


class RenameRequest(_Schema):
    name: str


# --- Jobs ---


class ImportRequest(_Schema):
    content: str
    format: DocumentFormat = DocumentFormat.URDF
    unit: LengthUnit | None = None


class ExportRequest(_Schema):
    format: DocumentFormat = DocumentFormat.URDF
    world_frame: str | None = Field(None, alias="worldFrame")


class MergeRequest(_Schema):
    prefix: str = ""
    parent_anchor: int | None = Field(None, alias="parentAnchor")


class JobState(_Schema):
    """Job status as seen by the frontend."""

    job_id: str = Field(alias="jobId")
    kind: str
    format: str
    label: str
    status: str
    error: str | None = None
    result: Any = None
    warnings: list[dict[str, str]] = Field(default_factory=list)
