"""Asset resolution for mesh and model references.

The importer only needs to know whether an asset reference can be found;
mesh decoding happens elsewhere. Resolvers never raise for a missing asset,
they report ``Missing`` and let the caller degrade to a placeholder.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

PACKAGE_SCHEME = "package://"
FILE_SCHEME = "file://"


@dataclass(frozen=True)
class Found:
    """A resolved asset.

    Attributes:
        content: Raw asset bytes.
        location: Where the asset was found (filesystem path or mapping key).
    """

    content: bytes
    location: str


@dataclass(frozen=True)
class Missing:
    """An asset reference that could not be resolved."""

    reason: str


Resolution = Found | Missing


@runtime_checkable
class AssetResolver(Protocol):
    def resolve(self, asset_ref: str) -> Resolution: ...


class LocalAssetResolver:
    """Resolve references against the local filesystem.

    Supported forms:

    - ``package://<pkg>/<path>``: ``<root>/<pkg>/<path>`` for each search
      root, or ``<dir>/<path>`` when ``<pkg>`` is in ``packages``.
    - ``file://<path>``: an absolute (or cwd-relative) path.
    - anything else: relative to ``base_dir``, then each search root.

    Args:
        search_paths: Directories that contain packages or loose assets.
        packages: Explicit package name to directory mapping.
        base_dir: Directory of the referencing document.
    """

    def __init__(
        self,
        search_paths: Iterable[str | Path] = (),
        packages: Mapping[str, str | Path] | None = None,
        base_dir: str | Path | None = None,
    ) -> None:
        self.search_paths = [Path(p).expanduser() for p in search_paths]
        self.packages = {name: Path(p).expanduser() for name, p in (packages or {}).items()}
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def with_base_dir(self, base_dir: str | Path) -> LocalAssetResolver:
        """Copy of this resolver that resolves relative paths from ``base_dir``."""
        return LocalAssetResolver(self.search_paths, self.packages, base_dir)

    def candidates(self, asset_ref: str) -> list[Path]:
        """Filesystem locations tried for ``asset_ref``, in order."""
        if asset_ref.startswith(PACKAGE_SCHEME):
            package, _, rel = asset_ref[len(PACKAGE_SCHEME):].partition("/")
            if not package or not rel:
                return []
            out = [self.packages[package] / rel] if package in self.packages else []
            out.extend(root / package / rel for root in self.search_paths)
            return out
        if asset_ref.startswith(FILE_SCHEME):
            return [Path(asset_ref[len(FILE_SCHEME):])]

        path = Path(asset_ref)
        if path.is_absolute():
            return [path]
        roots = ([self.base_dir] if self.base_dir is not None else []) + self.search_paths
        return [root / path for root in roots]

    def resolve(self, asset_ref: str) -> Resolution:
        candidates = self.candidates(asset_ref)
        for path in candidates:
            if path.is_file():
                try:
                    return Found(content=path.read_bytes(), location=str(path))
                except OSError as e:
                    logger.warning("Asset %s exists but cannot be read: %s", path, e)
                    return Missing(reason=f"unreadable: {e}")
        if not candidates:
            return Missing(reason=f"unsupported asset reference '{asset_ref}'")
        return Missing(reason=f"not found in {len(candidates)} location(s)")


class MappingAssetResolver:
    """In-memory resolver keyed by the exact reference string."""

    def __init__(self, assets: Mapping[str, bytes] | None = None) -> None:
        self.assets = dict(assets or {})

    def resolve(self, asset_ref: str) -> Resolution:
        if asset_ref in self.assets:
            return Found(content=self.assets[asset_ref], location=asset_ref)
        return Missing(reason=f"'{asset_ref}' is not registered")
