"""Pydantic schemas for the direct-upload handshake."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from streamvault.modules.media.models import MediaStatus
from streamvault.modules.media.schemas import AssetResponse

_BYTE_UNITS = ("B", "KB", "MB", "GB")


def format_bytes(num_bytes: int) -> str:
    """Human-readable size, e.g. 1536 -> '1.5 KB'."""
    value = float(max(num_bytes, 0))
    unit = 0
    while value >= 1024 and unit < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 2):g} {_BYTE_UNITS[unit]}"


class UploadGrant(BaseModel):
    """Pre-signed direct upload for a single object."""
    url: str
    expires_at: datetime
    storage_key: str
    method: str = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)


class InitiatedUpload(BaseModel):
    """A freshly created asset together with its upload grant."""
    asset: AssetResponse
    upload: UploadGrant


class VerifiedUpload(BaseModel):
    """Facts about an uploaded object, as reported by the store."""
    storage_key: str
    asset_id: int
    file_size_bytes: int = Field(..., gt=0)
    mime_type: str


class CompleteUploadResult(BaseModel):
    """Outcome of completing an upload."""
    asset_id: int
    source_file_id: int
    storage_key: str
    status: MediaStatus
    file_size_bytes: int
    file_size: str
    mime_type: Optional[str] = None
    job_dispatched: bool = False
