"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

import json
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


DEFAULT_RENDITION_PROFILES = [
    {"name": "360p", "width": 640, "height": 360, "video_bitrate": "500k"},
    {"name": "480p", "width": 854, "height": 480, "video_bitrate": "1000k"},
    {"name": "720p", "width": 1280, "height": 720, "video_bitrate": "2500k"},
    {"name": "1080p", "width": 1920, "height": 1080, "video_bitrate": "5000k"},
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "StreamVault Media Pipeline"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./streamvault.db"
    DATABASE_ECHO: bool = False

    # Redis / Celery
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # Storage Configuration
    # STORAGE_BACKEND: s3, minio, memory
    STORAGE_BACKEND: str = "memory"
    STORAGE_BUCKET: str = "streamvault-media"
    STORAGE_REGION: str = "us-east-1"
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_PUBLIC_ENDPOINT_URL: Optional[str] = None  # Host clients reach for grants
    STORAGE_USE_SSL: bool = True

    # Direct uploads
    UPLOAD_KEY_NAMESPACE: str = "videos"
    UPLOAD_URL_TTL_MINUTES: int = 60

    # Transcoding tools
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    TRANSCODE_PROBE_TIMEOUT_SECONDS: float = 120.0
    TRANSCODE_ENCODE_TIMEOUT_SECONDS: float = 3600.0
    TRANSCODE_THUMBNAIL_TIMEOUT_SECONDS: float = 120.0
    TRANSCODE_JOB_TIMEOUT_SECONDS: float = 7200.0

    # Transcoding policy
    TRANSCODE_MAX_ATTEMPTS: int = 3
    TRANSCODE_RETRY_BACKOFF_SECONDS: str = "60,300,900"  # delay before attempt 2, 3, ...
    TRANSCODE_PROFILES: list[dict] = DEFAULT_RENDITION_PROFILES
    TRANSCODE_THUMBNAIL_OFFSET_SECONDS: float = 5.0
    TRANSCODE_SCRATCH_DIR: Optional[str] = None  # None = system temp dir
    TRANSCODE_ALLOW_DEGRADED_PROBE: bool = False
    TRANSCODE_ALLOW_PARTIAL_RENDITIONS: bool = False
    # A scheduled retry this overdue is treated as lost and may be re-dispatched
    TRANSCODE_STALE_RETRY_GRACE_SECONDS: float = 3600.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Tracing
    OTLP_ENDPOINT: Optional[str] = None
    TRACING_CONSOLE_EXPORT: bool = False

    @field_validator("TRANSCODE_PROFILES", mode="before")
    @classmethod
    def _parse_profiles(cls, value):
        if isinstance(value, str):
            return json.loads(value)
        return value

    @property
    def transcode_backoff_schedule(self) -> list[float]:
        """Delays in seconds between consecutive transcode attempts."""
        return [
            float(part)
            for part in self.TRANSCODE_RETRY_BACKOFF_SECONDS.split(",")
            if part.strip()
        ]

    @property
    def celery_broker_url(self) -> str:
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @property
    def celery_result_backend(self) -> str:
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
