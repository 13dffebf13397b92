"""Workcell editor API — thin FastAPI layer over the editor session.

All business logic lives in the workcell_editor package. This module only
wires routes, middleware, error mapping and the application lifecycle.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workcell_editor.api.routes import jobs, workcell
from workcell_editor.errors import (
    CyclicTopologyError,
    DanglingReferenceError,
    DuplicateIdentifierError,
    JobError,
    ReferencedEntityInUseError,
    UndoPreconditionError,
    WorkcellError,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Lifespan
# ------------------------------------------------------------------


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — initialize on start, shutdown on exit."""
    from workcell_editor.state import get_session

    get_session()
    logger.info("Workcell editor API started")
    yield
    import workcell_editor.state as state_mod

    if state_mod._session is not None:
        state_mod._session.shutdown()
    logger.info("Workcell editor API stopped")


app = FastAPI(title="Workcell Editor API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(workcell.router, prefix="/workcell", tags=["workcell"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])


# ------------------------------------------------------------------
# Error mapping
# ------------------------------------------------------------------

_CONFLICTS = (
    CyclicTopologyError,
    DuplicateIdentifierError,
    ReferencedEntityInUseError,
    UndoPreconditionError,
)


def status_for(error: WorkcellError) -> int:
    """HTTP status for a rejected operation."""
    if isinstance(error, DanglingReferenceError):
        return 404
    if isinstance(error, JobError):
        if error.rule == "failed":
            return 422
        return 409 if error.rule == "cancelled" else 404
    if isinstance(error, _CONFLICTS):
        return 409
    return 422


@app.exception_handler(WorkcellError)
async def workcell_error_handler(_request: Request, exc: WorkcellError) -> JSONResponse:
    status = status_for(exc)
    logger.info("Rejected request: [%s] %s (%d)", exc.rule, exc, status)
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/session")
async def session_info() -> dict:
    """Open document summary for the frontend status bar."""
    from workcell_editor.state import get_session

    return get_session().get_status_dict()
