"""Document formats: URDF import/export, the native site codec and asset lookup."""

from . import site_codec
from .assets import AssetResolver, Found, LocalAssetResolver, MappingAssetResolver, Missing
from .urdf_exporter import UrdfExporter
from .urdf_importer import ImportIssue, ImportResult, UrdfImporter

__all__ = [
    "AssetResolver",
    "Found",
    "ImportIssue",
    "ImportResult",
    "LocalAssetResolver",
    "MappingAssetResolver",
    "Missing",
    "UrdfExporter",
    "UrdfImporter",
    "site_codec",
]
