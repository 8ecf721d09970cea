"""Pydantic schemas for transcoding profiles and results."""

import re
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from streamvault.core.config import settings

_BITRATE_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)([kKmM]?)$")


def parse_bitrate_kbps(bitrate: str) -> int:
    """Convert an ffmpeg bitrate string ('500k', '5M', '128000') to kbps."""
    match = _BITRATE_RE.match(bitrate.strip())
    if not match:
        raise ValueError(f"Invalid bitrate: {bitrate!r}")
    value, unit = float(match.group(1)), match.group(2).lower()
    if unit == "m":
        return int(value * 1000)
    if unit == "k":
        return int(value)
    return int(value // 1000)


class RenditionProfile(BaseModel):
    """One output quality level.

    Profiles are encoded in declared order, and ``name`` becomes part of the
    rendition's storage key.
    """
    name: str = Field(..., pattern=r"^[A-Za-z0-9_-]+$", max_length=50)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    video_bitrate: str = Field(..., description="ffmpeg -b:v value, e.g. 2500k")
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    container: str = "mp4"
    preset: str = "medium"

    @field_validator("video_bitrate", "audio_bitrate")
    @classmethod
    def _valid_bitrate(cls, value: str) -> str:
        parse_bitrate_kbps(value)
        return value

    @property
    def bitrate_kbps(self) -> int:
        return parse_bitrate_kbps(self.video_bitrate)

    @property
    def dimensions(self) -> str:
        return f"{self.width}x{self.height}"


def load_profiles(raw: Optional[list[dict]] = None) -> list[RenditionProfile]:
    """Build the profile table from configuration.

    Args:
        raw: Profile dicts, defaults to TRANSCODE_PROFILES

    Returns:
        Profiles in declared order

    Raises:
        ValueError: If the table is empty or names repeat
    """
    entries = settings.TRANSCODE_PROFILES if raw is None else raw
    profiles = [RenditionProfile(**entry) for entry in entries]
    if not profiles:
        raise ValueError("At least one rendition profile is required")

    names = [p.name for p in profiles]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate rendition profile names: {', '.join(duplicates)}")
    return profiles


@dataclass(frozen=True)
class ProbeResult:
    """Metadata extracted from the first video stream."""
    duration_seconds: float
    codec_video: str
    bitrate: Optional[str]
    width: Optional[int] = None
    height: Optional[int] = None
    degraded: bool = False


DEGRADED_PROBE_RESULT = ProbeResult(
    duration_seconds=0.0,
    codec_video="h264",
    bitrate="5000k",
    width=None,
    height=None,
    degraded=True,
)


@dataclass(frozen=True)
class EncodedRendition:
    """A rendition file sitting in scratch space, ready to publish."""
    profile: RenditionProfile
    rendition_id: int
    path: str
    file_size_bytes: int
