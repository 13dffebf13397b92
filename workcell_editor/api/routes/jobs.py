"""Import/export job routes.

Imports and exports run on the session's job service. A finished import is
held by its job until the client merges it into the open document; nothing
enters the live workcell before that.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from workcell_editor.api.schemas import ExportRequest, ImportRequest, JobState, MergeRequest
from workcell_editor.errors import JobError, WorkcellError
from workcell_editor.io import ImportResult, UrdfExporter
from workcell_editor.jobs import Done, Failed, Job, JobKind, JobStatus

logger = logging.getLogger(__name__)

router = APIRouter()


def _session():
    from workcell_editor.state import get_session

    return get_session()


def _job_to_schema(job: Job) -> JobState:
    """Poll a job and convert it to the API schema."""
    outcome = _session().jobs.poll(job.job_id)
    state = JobState(
        job_id=job.job_id,
        kind=job.kind.value,
        format=job.fmt.value,
        label=job.label,
        status=job.status.value,
        error=job.error,
    )
    if isinstance(outcome, Failed) and isinstance(outcome.error, WorkcellError):
        state.error = outcome.error.message
    if isinstance(outcome, Done):
        result = outcome.result
        if isinstance(result, ImportResult):
            state.result = {
                "name": result.workcell.metadata.name,
                "entities": result.workcell.entity_count(),
                "rootLink": result.root_link,
            }
            state.warnings = [
                {"element": w.element, "message": w.message} for w in result.warnings
            ]
        else:
            state.result = result
    return state


def _require(job_id: str) -> Job:
    job = _session().jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return job


@router.post("/import")
async def start_import(request: ImportRequest) -> JobState:
    """Parse a URDF or site document in the background."""
    session = _session()
    job = session.jobs.submit_import(
        request.content,
        request.format,
        asset_resolver=session.asset_resolver(),
        unit=request.unit or session.editor.workcell.metadata.unit,
    )
    return _job_to_schema(job)


@router.post("/export")
async def start_export(request: ExportRequest) -> JobState:
    """Serialize a snapshot of the open document in the background."""
    session = _session()
    exporter = (
        UrdfExporter(world_frame=request.world_frame)
        if request.world_frame
        else session.urdf_exporter()
    )
    job = session.jobs.submit_export(session.editor.snapshot(), request.format, exporter)
    return _job_to_schema(job)


@router.get("")
async def list_jobs() -> list[JobState]:
    """All jobs, newest first."""
    return [_job_to_schema(job) for job in _session().jobs.list_jobs()]


@router.get("/{job_id}")
async def get_job(job_id: str) -> JobState:
    return _job_to_schema(_require(job_id))


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str) -> JobState:
    """Cancel a pending job. Its result is discarded even if it completes."""
    job = _require(job_id)
    if not _session().jobs.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job '{job_id}' is already {job.status}")
    return _job_to_schema(job)


@router.post("/{job_id}/merge")
async def merge_import(job_id: str, request: MergeRequest) -> dict:
    """Merge a finished import into the open document as one undoable edit.

    Returns:
        Mapping from the imported ids to the new ids, as strings.
    """
    job = _require(job_id)
    if job.kind != JobKind.IMPORT:
        raise HTTPException(status_code=422, detail=f"Job '{job_id}' is not an import")

    session = _session()
    outcome = session.jobs.poll(job_id)
    if isinstance(outcome, Failed):
        if isinstance(outcome.error, WorkcellError):
            raise outcome.error
        raise JobError(
            f"Import job '{job_id}' failed: {outcome.error}", entity=job_id, rule="failed"
        ) from outcome.error
    if not isinstance(outcome, Done) or job.status != JobStatus.DONE:
        raise HTTPException(status_code=409, detail=f"Job '{job_id}' has not finished")

    id_map = session.editor.merge(
        outcome.result.workcell, prefix=request.prefix, parent_anchor=request.parent_anchor
    )
    logger.info("Merged import job %s (%d entities)", job_id, len(id_map))
    return {"idMap": {str(old): new for old, new in id_map.items()}}
