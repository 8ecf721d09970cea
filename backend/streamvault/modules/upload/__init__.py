"""Direct uploads: pre-signed grants, verification and registration."""

from streamvault.modules.upload.service import UploadService

__all__ = ["UploadService"]
