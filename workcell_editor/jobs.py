"""Import/export job service.

Import and export are the only operations that run off the edit loop. They
are submitted to a task executor and work on immutable inputs: document
bytes for imports, a workcell snapshot for exports. Results never touch the
live workcell; an import result enters it only through
``WorkcellEditor.merge``. Cancelling a job discards its result.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from workcell_editor.errors import JobError, WorkcellError
from workcell_editor.geometry import LengthUnit
from workcell_editor.io import site_codec
from workcell_editor.io.assets import AssetResolver
from workcell_editor.io.urdf_exporter import UrdfExporter
from workcell_editor.io.urdf_importer import ImportResult, UrdfImporter
from workcell_editor.model.workcell import Workcell

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Executor contract
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Pending:
    """Job not finished yet."""


@dataclass(frozen=True)
class Done:
    result: Any


@dataclass(frozen=True)
class Failed:
    error: BaseException


JobOutcome = Pending | Done | Failed


class TaskExecutor(Protocol):
    """Opaque asynchronous job runner."""

    def submit(self, fn: Callable[[], Any]) -> Any: ...

    def poll(self, handle: Any) -> JobOutcome: ...

    def cancel(self, handle: Any) -> bool: ...


class ThreadPoolTaskExecutor:
    """Default executor backed by a ``concurrent.futures`` thread pool.

    Args:
        max_workers: Number of worker threads.
    """

    def __init__(self, max_workers: int = 2) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workcell-job")

    def submit(self, fn: Callable[[], Any]) -> Future:
        return self._pool.submit(fn)

    def poll(self, handle: Future) -> JobOutcome:
        if not handle.done():
            return Pending()
        if handle.cancelled():
            return Failed(JobError("Job was cancelled", rule="cancelled"))
        exc = handle.exception()
        if exc is not None:
            return Failed(exc)
        return Done(handle.result())

    def cancel(self, handle: Future) -> bool:
        """Cancel if not started. A running job keeps running; its result is ignored."""
        return handle.cancel()

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=True)


# ------------------------------------------------------------------
# Jobs
# ------------------------------------------------------------------


class JobKind(StrEnum):
    IMPORT = "import"
    EXPORT = "export"


class JobStatus(StrEnum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DocumentFormat(StrEnum):
    URDF = "urdf"
    SITE = "site"


class Job:
    """Book-keeping for one submitted import or export.

    Attributes:
        job_id: Short unique identifier.
        kind: Import or export.
        fmt: Document format handled by the job.
        label: What the job works on (file name, workcell name).
        status: Last observed status.
        error: Error message once failed.
        created_at: Unix timestamp of submission.
    """

    def __init__(self, job_id: str, kind: JobKind, fmt: DocumentFormat, label: str) -> None:
        self.job_id = job_id
        self.kind = kind
        self.fmt = fmt
        self.label = label
        self.status = JobStatus.PENDING
        self.error: str | None = None
        self.created_at = time.time()
        self.handle: Any = None

    def to_dict(self) -> dict:
        """Serialize to a JSON-safe dict."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "format": self.fmt.value,
            "label": self.label,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at,
        }


class JobService:
    """Submit, poll and cancel import/export jobs.

    Finished jobs stay available for polling and merging until more than
    ``max_finished`` of them have piled up; the oldest are then forgotten.

    Args:
        executor: Task executor collaborator. Defaults to a thread pool.
        max_finished: Finished (done, failed or cancelled) jobs to keep.
    """

    def __init__(self, executor: TaskExecutor | None = None, max_finished: int = 50) -> None:
        self._executor = executor if executor is not None else ThreadPoolTaskExecutor()
        self._max_finished = max_finished
        # Insertion order is submission order
        self._jobs: dict[str, Job] = {}

    @property
    def executor(self) -> TaskExecutor:
        return self._executor

    def submit_import(
        self,
        source: str | bytes | Path,
        fmt: DocumentFormat | str = DocumentFormat.URDF,
        asset_resolver: AssetResolver | None = None,
        unit: LengthUnit | str = LengthUnit.METRE,
    ) -> Job:
        """Parse a document in the background.

        The job result is an ``ImportResult`` whose workcell has its own id
        allocator; merge it into the live document to use it.
        """
        fmt = DocumentFormat(fmt)
        if isinstance(source, str) and fmt == DocumentFormat.URDF:
            source = source.encode("utf-8")

        if fmt == DocumentFormat.URDF:
            importer = UrdfImporter(asset_resolver, unit=unit)

            def work() -> ImportResult:
                return importer.parse(source)
        else:

            def work() -> ImportResult:
                workcell = (
                    site_codec.load(source) if isinstance(source, Path)
                    else site_codec.decode(source)
                )
                roots = workcell.root_links()
                return ImportResult(workcell=workcell, root_link=roots[0] if roots else None)

        label = source.name if isinstance(source, Path) else f"<{len(source)} bytes>"
        return self._submit(JobKind.IMPORT, fmt, label, work)

    def submit_export(
        self,
        snapshot: Workcell,
        fmt: DocumentFormat | str = DocumentFormat.URDF,
        exporter: UrdfExporter | None = None,
    ) -> Job:
        """Serialize a workcell snapshot in the background. The result is text.

        Args:
            snapshot: A copy taken with ``WorkcellEditor.snapshot()``; the live
                workcell must not be passed here.
        """
        fmt = DocumentFormat(fmt)
        if fmt == DocumentFormat.URDF:
            exporter = exporter or UrdfExporter()

            def work() -> str:
                return exporter.export(snapshot)
        else:

            def work() -> str:
                return site_codec.encode(snapshot)

        return self._submit(JobKind.EXPORT, fmt, snapshot.metadata.name, work)

    def _submit(
        self,
        kind: JobKind,
        fmt: DocumentFormat,
        label: str,
        work: Callable[[], Any],
    ) -> Job:
        job = Job(str(uuid.uuid4())[:8], kind, fmt, label)

        def run() -> Any:
            try:
                return work()
            except WorkcellError as e:
                logger.warning("%s job %s failed: [%s] %s", kind.value, job.job_id, e.rule, e)
                raise
            except Exception as e:
                logger.error("Unexpected %s job error in %s: %s", kind.value, job.job_id, e,
                             exc_info=True)
                raise

        self._prune()
        self._jobs[job.job_id] = job
        job.handle = self._executor.submit(run)
        logger.info("Submitted %s job %s (%s, %s)", kind.value, job.job_id, fmt.value, label)
        return job

    def poll(self, job_id: str) -> JobOutcome:
        """Current outcome of a job.

        Raises:
            JobError: Unknown job id.
        """
        job = self._require(job_id)
        if job.status == JobStatus.CANCELLED:
            return Failed(
                JobError(f"Job '{job_id}' was cancelled", entity=job_id, rule="cancelled")
            )

        outcome = self._executor.poll(job.handle)
        if isinstance(outcome, Done):
            job.status = JobStatus.DONE
        elif isinstance(outcome, Failed):
            job.status = JobStatus.FAILED
            job.error = str(outcome.error)
        return outcome

    def cancel(self, job_id: str) -> bool:
        """Cancel a job. Its result is discarded even if it still completes.

        Returns:
            True if the job was pending and is now cancelled.
        """
        job = self._require(job_id)
        if job.status != JobStatus.PENDING:
            return False
        self._executor.cancel(job.handle)
        job.status = JobStatus.CANCELLED
        logger.info("Cancelled job %s", job_id)
        return True

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        """All jobs, newest first."""
        return list(reversed(self._jobs.values()))

    def shutdown(self) -> None:
        shutdown = getattr(self._executor, "shutdown", None)
        if shutdown is not None:
            shutdown(wait=False)

    def _prune(self) -> None:
        """Forget the oldest finished jobs beyond ``max_finished``. Pending jobs are kept."""
        finished: list[Job] = []
        for job in self.list_jobs():
            if job.status == JobStatus.PENDING:
                self.poll(job.job_id)
            if job.status != JobStatus.PENDING:
                finished.append(job)
        for job in finished[self._max_finished :]:
            del self._jobs[job.job_id]
            logger.debug("Forgot %s job %s (%s)", job.kind.value, job.job_id, job.status.value)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobError(f"Job '{job_id}' not found", entity=job_id)
        return job
