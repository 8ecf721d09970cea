"""Media records: assets, uploaded source files and their renditions."""

from streamvault.modules.media.models import (
    Asset,
    JobStage,
    MediaStatus,
    Rendition,
    SourceFile,
)
from streamvault.modules.media.repository import (
    AssetRepository,
    RenditionRepository,
    SourceFileRepository,
)

__all__ = [
    "Asset",
    "JobStage",
    "MediaStatus",
    "Rendition",
    "SourceFile",
    "AssetRepository",
    "RenditionRepository",
    "SourceFileRepository",
]
