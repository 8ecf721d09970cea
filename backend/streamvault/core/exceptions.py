"""Error taxonomy for the upload handshake and transcode pipeline.

Upload errors are raised synchronously to the caller. Pipeline errors are
absorbed by the transcode task and surface only as a failed SourceFile with
a stored error message.
"""

from typing import Optional


MAX_ERROR_MESSAGE_LENGTH = 4000


def truncate_error(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Clip an error message to what fits in the error_message column."""
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


class StreamVaultError(Exception):
    """Base exception for all media pipeline errors."""

    pass


# ==================== Upload / gateway (synchronous) ====================


class UploadError(StreamVaultError):
    """Base exception for upload issuance and verification errors."""

    pass


class InvalidStorageKey(UploadError):
    """Raised when a storage key does not match the upload key policy."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid storage key '{key}': {reason}")


class UnsupportedFileType(UploadError):
    """Raised when a client filename has an extension outside the allow-list."""

    def __init__(self, filename: str, allowed: tuple[str, ...]):
        self.filename = filename
        self.allowed = allowed
        super().__init__(
            f"Unsupported file type for '{filename}'. Allowed: {', '.join(allowed)}"
        )


class ObjectNotFound(UploadError):
    """Raised when the object store has no object under a key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Uploaded file not found in storage: {key}")


class ObjectEmpty(UploadError):
    """Raised when an uploaded object exists but has zero length."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Uploaded file is empty: {key}")


class GatewayUnavailable(UploadError):
    """Raised when the object store cannot serve a request."""

    pass


class TranscodeAlreadyInProgress(StreamVaultError):
    """Raised when a transcode is dispatched for a SourceFile that already has one."""

    def __init__(self, source_file_id: int):
        self.source_file_id = source_file_id
        super().__init__(f"Source file {source_file_id} already has a transcode in flight")


# ==================== Pipeline ====================


class TranscodeError(StreamVaultError):
    """Base exception for errors raised while a transcode job runs."""

    retryable: bool = False

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        super().__init__(message)


class RetryableTranscodeError(TranscodeError):
    """A failure the job may recover from by running again from the start."""

    retryable = True


class DownloadError(RetryableTranscodeError):
    """Raised when the source object cannot be fetched to scratch storage."""

    def __init__(self, message: str):
        super().__init__(message, stage="downloading")


class ProbeError(RetryableTranscodeError):
    """Raised when the probe tool fails or its output cannot be parsed."""

    def __init__(self, message: str):
        super().__init__(message, stage="probing")


class EncodeError(RetryableTranscodeError):
    """Raised when a rendition encode fails."""

    def __init__(self, message: str, profile: Optional[str] = None):
        self.profile = profile
        super().__init__(message, stage="encoding")


class PublishError(RetryableTranscodeError):
    """Raised when encoded outputs cannot be written to the object store."""

    def __init__(self, message: str):
        super().__init__(message, stage="publishing")


class JobTimeout(TranscodeError):
    """Raised when a job exceeds its overall time budget. Never retried."""

    pass


class NotFoundReference(StreamVaultError):
    """Raised when a referenced Asset or SourceFile does not exist.

    At job start this points at an upstream consistency bug and is never retried.
    """

    retryable = False

    def __init__(self, kind: str, identifier: int):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class JobSuperseded(TranscodeError):
    """Raised when an attempt no longer owns its SourceFile row."""

    pass
