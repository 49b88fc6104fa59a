"""Client for the hosted video API."""

from .client import AsyncStudioClient, patch_url_host
from .exceptions import (
    APIError,
    AuthenticationError,
    ConnectError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutException,
    ValidationError,
)
from .types import (
    Asset,
    Ingest,
    PlaybackInfo,
    PlaybackSource,
    PlaybackSourceType,
    Stream,
    StreamSession,
    Task,
    TaskStatus,
    UploadRequest,
)

__all__ = [
    "APIError",
    "Asset",
    "AsyncStudioClient",
    "AuthenticationError",
    "ConnectError",
    "ForbiddenError",
    "Ingest",
    "NotFoundError",
    "PlaybackInfo",
    "PlaybackSource",
    "PlaybackSourceType",
    "RateLimitError",
    "ServerError",
    "Stream",
    "StreamSession",
    "Task",
    "TaskStatus",
    "TimeoutException",
    "UploadRequest",
    "ValidationError",
    "patch_url_host",
]
