"""Storage key layout for uploads and derived media.

    <ns>/uploads/<asset-id>/<token>.<ext>
    <ns>/renditions/<sf-id>/<sf-id>-<profile>.<container>
    <ns>/thumbnails/<sf-id>/thumbnail.jpg
"""

import re
import uuid
from dataclasses import dataclass
from typing import Optional

from streamvault.core.config import settings
from streamvault.core.exceptions import InvalidStorageKey

ALLOWED_EXTENSIONS: tuple[str, ...] = ("mp4", "webm", "mov", "avi", "mkv", "flv", "wmv")

MIME_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "flv": "video/x-flv",
    "wmv": "video/x-ms-wmv",
}

DEFAULT_MIME_TYPE = "video/mp4"

_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+")
_ASSET_ID_RE = re.compile(r"[1-9][0-9]*")


@dataclass(frozen=True)
class UploadKey:
    """Components of a parsed upload key."""

    asset_id: int
    token: str
    extension: str


def file_extension(filename: str) -> str:
    """Lower-cased extension of a client filename, or '' when there is none."""
    base = filename.strip().rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[-1].lower()


def mime_type_for(extension: str) -> str:
    return MIME_TYPES.get(extension.lower(), DEFAULT_MIME_TYPE)


def build_upload_key(
    asset_id: int,
    extension: str,
    token: Optional[str] = None,
    namespace: Optional[str] = None,
) -> str:
    """Build a fresh upload key for an asset.

    Args:
        asset_id: Owning asset
        extension: Lower-cased extension from the client filename
        token: Object token, a new UUID4 when omitted
        namespace: Key prefix, defaults to UPLOAD_KEY_NAMESPACE

    Returns:
        Storage key the client will PUT to
    """
    ns = namespace or settings.UPLOAD_KEY_NAMESPACE
    token = token or str(uuid.uuid4())
    return f"{ns}/uploads/{asset_id}/{token}.{extension}"


def parse_upload_key(key: str, namespace: Optional[str] = None) -> UploadKey:
    """Validate an upload key and split it into its components.

    Surrounding whitespace is ignored. Every other deviation from the upload
    layout raises InvalidStorageKey naming what was wrong.
    """
    ns = namespace or settings.UPLOAD_KEY_NAMESPACE
    normalized = key.strip()
    prefix = f"{ns}/uploads/"

    if not normalized.startswith(prefix):
        raise InvalidStorageKey(key, f"must start with '{prefix}'")

    parts = normalized[len(prefix):].split("/")
    if len(parts) != 2:
        raise InvalidStorageKey(key, "must be '<asset-id>/<token>.<ext>' under the upload prefix")

    asset_part, filename = parts
    if not _ASSET_ID_RE.fullmatch(asset_part):
        raise InvalidStorageKey(key, "asset id must be a positive integer")

    if "." not in filename:
        raise InvalidStorageKey(key, "missing file extension")
    token, extension = filename.rsplit(".", 1)

    if not _TOKEN_RE.fullmatch(token):
        raise InvalidStorageKey(key, "object token may only contain letters, digits, '_' and '-'")
    if extension not in ALLOWED_EXTENSIONS:
        raise InvalidStorageKey(
            key, f"extension '{extension}' not allowed (allowed: {', '.join(ALLOWED_EXTENSIONS)})"
        )

    return UploadKey(asset_id=int(asset_part), token=token, extension=extension)


def rendition_key(
    source_file_id: int,
    profile_name: str,
    container: str = "mp4",
    namespace: Optional[str] = None,
) -> str:
    ns = namespace or settings.UPLOAD_KEY_NAMESPACE
    return f"{ns}/renditions/{source_file_id}/{source_file_id}-{profile_name}.{container}"


def thumbnail_key(source_file_id: int, namespace: Optional[str] = None) -> str:
    ns = namespace or settings.UPLOAD_KEY_NAMESPACE
    return f"{ns}/thumbnails/{source_file_id}/thumbnail.jpg"
