"""EditorSession — lifecycle holder for the open document and its services.

The id allocator is scoped to one open document: ``new_document`` and
``open_document`` start a fresh scope, and ids never carry across documents.
Other modules import ``get_session()`` instead of managing their own
singletons.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from workcell_editor.config import WORKCELLS_DIR, EditorSettings, load_settings
from workcell_editor.editing import WorkcellEditor
from workcell_editor.errors import InvalidArgumentError
from workcell_editor.geometry import LengthUnit, UpAxis
from workcell_editor.io import LocalAssetResolver, UrdfExporter, site_codec
from workcell_editor.jobs import JobService, TaskExecutor, ThreadPoolTaskExecutor
from workcell_editor.model import IdAllocator, Workcell, WorkcellMetadata

logger = logging.getLogger(__name__)


def document_path(name: str) -> Path:
    """Resolve a document name to its JSON file in the workcells directory.

    Names are bare file stems; a trailing ``.json`` is accepted.

    Raises:
        InvalidArgumentError: If the name is empty or would leave the directory.
    """
    stem = name.removesuffix(".json")
    if not stem.strip() or stem in (".", "..") or any(c in stem for c in "/\\\0"):
        raise InvalidArgumentError(
            f"Invalid document name {name!r}: use a plain name without path separators",
            entity=name,
            rule="document_name",
        )
    return WORKCELLS_DIR / f"{stem}.json"


def list_documents() -> list[str]:
    """Names of the saved documents, sorted."""
    if not WORKCELLS_DIR.is_dir():
        return []
    return sorted(p.stem for p in WORKCELLS_DIR.glob("*.json"))


class EditorSession:
    """One editing session: the active document, its editor and the job service.

    Args:
        settings: Editor settings. Defaults are used when omitted.
        executor: Task executor for import/export jobs. A thread pool sized
            by ``settings.job_workers`` is created when omitted.
    """

    def __init__(
        self,
        settings: EditorSettings | None = None,
        executor: TaskExecutor | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._settings = settings or EditorSettings()
        self._jobs = JobService(
            executor or ThreadPoolTaskExecutor(max_workers=self._settings.job_workers),
            max_finished=self._settings.job_history,
        )
        self._document_path: Path | None = None
        self._editor = self._make_editor(Workcell(self._new_metadata(), IdAllocator()))

    # --- Read-only properties ---

    @property
    def settings(self) -> EditorSettings:
        return self._settings

    @property
    def editor(self) -> WorkcellEditor:
        """Editor of the active document."""
        return self._editor

    @property
    def jobs(self) -> JobService:
        return self._jobs

    @property
    def document_path(self) -> Path | None:
        """Where the active document was last loaded from or saved to."""
        return self._document_path

    # --- Documents ---

    def new_document(
        self,
        name: str = "workcell",
        unit: LengthUnit | str | None = None,
        up_axis: UpAxis | str | None = None,
    ) -> WorkcellEditor:
        """Replace the active document with an empty one and a fresh id scope."""
        metadata = self._new_metadata(name, unit, up_axis)
        with self._lock:
            self._editor = self._make_editor(Workcell(metadata, IdAllocator()))
            self._document_path = None
        logger.info("New document '%s' (%s, %s-up)", name, metadata.unit, metadata.up_axis)
        return self._editor

    def open_document(self, path: Path) -> WorkcellEditor:
        """Load a site document as the active document.

        Raises:
            WorkcellError: The document is invalid; the active document is kept.
        """
        workcell = site_codec.load(path)
        with self._lock:
            self._editor = self._make_editor(workcell)
            self._document_path = path
        return self._editor

    def save_document(self, path: Path | None = None) -> Path:
        """Save the active document. Defaults to its last path, else the workcells dir."""
        if path is None:
            path = self._document_path or document_path(self._editor.workcell.metadata.name)
        site_codec.save(self._editor.workcell, path)
        self._document_path = path
        return path

    # --- Collaborators built from settings ---

    def asset_resolver(self, base_dir: Path | None = None) -> LocalAssetResolver:
        return LocalAssetResolver(self._settings.asset_search_paths, base_dir=base_dir)

    def urdf_exporter(self) -> UrdfExporter:
        return UrdfExporter(world_frame=self._settings.export_world_frame)

    # --- Lifecycle ---

    def shutdown(self) -> None:
        self._jobs.shutdown()
        logger.info("EditorSession shut down")

    def get_status_dict(self) -> dict:
        """Session summary for the ``/session`` endpoint."""
        workcell = self._editor.workcell
        return {
            "document": workcell.metadata.name,
            "path": str(self._document_path) if self._document_path else None,
            "unit": workcell.metadata.unit.value,
            "upAxis": workcell.metadata.up_axis.value,
            "entities": workcell.entity_count(),
            "canUndo": self._editor.can_undo,
            "canRedo": self._editor.can_redo,
            "jobs": len(self._jobs.list_jobs()),
        }

    def _new_metadata(
        self,
        name: str = "workcell",
        unit: LengthUnit | str | None = None,
        up_axis: UpAxis | str | None = None,
    ) -> WorkcellMetadata:
        return WorkcellMetadata(
            name=name,
            unit=LengthUnit(unit or self._settings.unit),
            up_axis=UpAxis(up_axis or self._settings.up_axis),
        )

    def _make_editor(self, workcell: Workcell) -> WorkcellEditor:
        return WorkcellEditor(workcell, journal_depth=self._settings.journal_depth)


# --- Module-level singleton ---

_session: EditorSession | None = None
_session_lock = threading.Lock()


def get_session() -> EditorSession:
    """Return the global EditorSession, creating it from config on first call."""
    global _session  # noqa: PLW0603
    if _session is None:
        with _session_lock:
            if _session is None:
                _session = EditorSession(load_settings())
    return _session
