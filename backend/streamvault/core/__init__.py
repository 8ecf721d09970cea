"""Core module for configuration and utilities."""

from streamvault.core.config import settings
from streamvault.core.database import Base, async_session_maker

__all__ = [
    "settings",
    "Base",
    "async_session_maker",
]
