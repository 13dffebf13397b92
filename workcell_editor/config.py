"""Unified configuration loader and path constants.

Single source of truth for filesystem paths and YAML config I/O.
Falls back through a chain of config locations for fresh installs and tests.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from workcell_editor.geometry import LengthUnit, UpAxis

logger = logging.getLogger(__name__)

# --- Path constants (derived from project root) ---

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Config paths
CONFIGS_DIR = PROJECT_ROOT / "configs"
CONFIG_PATH = CONFIGS_DIR / "settings.yaml"
CONFIG_EXAMPLE_PATH = CONFIGS_DIR / "settings.example.yaml"

# Data paths (gitignored, created on first use)
DATA_DIR = PROJECT_ROOT / "data"
WORKCELLS_DIR = DATA_DIR / "workcells"

_config_lock = threading.Lock()


class EditorSettings(BaseModel):
    """The ``editor`` section of the config file.

    Attributes:
        unit: Canonical length unit of new documents.
        up_axis: Up axis of new documents.
        journal_depth: Maximum number of undoable edits.
        asset_search_paths: Roots searched for ``package://`` and relative meshes.
        export_world_frame: Name of the world link added on URDF export, or None.
        job_workers: Threads available to import/export jobs.
        job_history: Finished jobs kept for polling; older ones are forgotten.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unit: LengthUnit = LengthUnit.METRE
    up_axis: UpAxis = Field(UpAxis.Z, alias="upAxis")
    journal_depth: int = Field(200, ge=1, alias="journalDepth")
    asset_search_paths: list[str] = Field(default_factory=list, alias="assetSearchPaths")
    export_world_frame: str | None = Field(None, alias="exportWorldFrame")
    job_workers: int = Field(2, ge=1, alias="jobWorkers")
    job_history: int = Field(50, ge=1, alias="jobHistory")


def _resolve_config_path() -> Path | None:
    """Find the first existing config file in the fallback chain.

    Order: settings.yaml → settings.example.yaml.
    Returns None if no config file exists.
    """
    for path in (CONFIG_PATH, CONFIG_EXAMPLE_PATH):
        if path.exists():
            return path
    return None


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the YAML config, falling back through the config chain.

    Args:
        path: Explicit path to load. If None, uses the fallback chain.

    Returns:
        Parsed config dict, or empty dict if no config file found.
    """
    if path is None:
        path = _resolve_config_path()
    if path is None:
        logger.warning("No config file found in fallback chain")
        return {}

    with _config_lock, open(path) as f:
        data = yaml.safe_load(f) or {}

    logger.info("Loaded config from %s", path)
    return data


def save_config(data: dict[str, Any], path: Path | None = None) -> None:
    """Write config data to YAML.

    Args:
        data: Config dict to persist.
        path: Target file. Defaults to CONFIG_PATH (configs/settings.yaml).
    """
    if path is None:
        path = CONFIG_PATH
    with _config_lock:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    logger.info("Saved config to %s", path)


def load_settings(data: dict[str, Any] | None = None) -> EditorSettings:
    """Parse the ``editor`` section, falling back to defaults on bad values.

    Args:
        data: Full config dict. Loaded through ``load_config`` when None.
    """
    if data is None:
        data = load_config()
    section = data.get("editor") or {}
    try:
        return EditorSettings.model_validate(section)
    except ValidationError as e:
        logger.warning("Invalid editor settings, using defaults: %s", e)
        return EditorSettings()
