"""
Background jobs - retryable cover generation and Kindle delivery.
"""

from .cover_sync import COVER_SYNC_MESSAGE_TYPE, CoverSyncChannel, classify_cover_error
from .kindle_sync import KindleSyncChannel, classify_kindle_error
from .retryable import (
    EnqueueResult,
    JobChannel,
    JobOutcome,
    RetryableJob,
    compact_error,
    is_transient_error,
)

__all__ = [
    "RetryableJob",
    "JobChannel",
    "JobOutcome",
    "EnqueueResult",
    "CoverSyncChannel",
    "KindleSyncChannel",
    "COVER_SYNC_MESSAGE_TYPE",
    "classify_cover_error",
    "classify_kindle_error",
    "compact_error",
    "is_transient_error",
]
