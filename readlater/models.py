"""
Data models - dataclasses for the records kept in the key-value store.

Attributes are snake_case; documents on the wire use camelCase keys.
"""

from dataclasses import dataclass, field
from typing import Any

from .converters import dataclass_from_dict, dataclass_to_dict

# Kindle delivery states
KINDLE_PENDING = "pending"
KINDLE_PROCESSING = "processing"
KINDLE_RETRYING = "retrying"
KINDLE_SYNCED = "synced"
KINDLE_FAILED = "failed"
KINDLE_NEEDS_CONTENT = "needs-content"
KINDLE_UNSUPPORTED = "unsupported"

# Cover generation job states
COVER_PENDING = "pending"
COVER_PROCESSING = "processing"
COVER_RETRYING = "retrying"
COVER_SUCCEEDED = "succeeded"
COVER_FAILED = "failed"

ACTIVE_JOB_STATUSES = frozenset({"pending", "processing", "retrying"})

# Push channel states
CHANNEL_PENDING = "pending"
CHANNEL_QUEUED = "queued"
CHANNEL_SENT = "sent"
CHANNEL_FAILED = "failed"
CHANNEL_SKIPPED = "skipped"

CHANNEL_STATUSES = frozenset({CHANNEL_PENDING, CHANNEL_QUEUED, CHANNEL_SENT, CHANNEL_FAILED, CHANNEL_SKIPPED})

READINESS_PENDING = "pending"
READINESS_READY = "ready"


@dataclass
class CoverInfo:
    updated_at: str | None = None


@dataclass
class JobState:
    """Fields shared by every retryable job state stored on an item."""
    status: str | None = None
    attempt: int = 0
    max_attempts: int = 0
    queued_at: str | None = None
    next_retry_at: str | None = None
    last_error: str | None = None
    error_code: str | None = None
    retryable: bool = True
    updated_at: str | None = None


@dataclass
class KindleState(JobState):
    last_attempt_at: str | None = None
    last_synced_at: str | None = None
    sync_version: str | None = None


@dataclass
class CoverSyncState(JobState):
    job_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


@dataclass
class Readiness:
    status: str = READINESS_PENDING
    ready_at: str | None = None
    reason: str | None = "waiting_for_reader_and_cover"


@dataclass
class ChannelState:
    status: str = CHANNEL_PENDING
    updated_at: str | None = None
    last_error: str | None = None


@dataclass
class IosChannelState(ChannelState):
    event_id: str | None = None


@dataclass
class PushChannels:
    readiness: Readiness = field(default_factory=Readiness)
    kindle: ChannelState = field(default_factory=ChannelState)
    ios: IosChannelState = field(default_factory=IosChannelState)

    @classmethod
    def from_dict(cls, data: Any) -> "PushChannels | None":
        return dataclass_from_dict(
            cls,
            data,
            nested={"readiness": Readiness, "kindle": ChannelState, "ios": IosChannelState},
        )


@dataclass
class Item:
    id: str
    url: str
    title: str = ""
    saved_at: str | None = None
    read: bool = False
    progress: Any = None
    cover: CoverInfo | None = None
    kindle: KindleState | None = None
    cover_sync: CoverSyncState | None = None
    push_channels: PushChannels | None = None
    extra: dict = field(default_factory=dict)  # fields owned by other endpoints

    def to_dict(self) -> dict:
        return {**self.extra, **dataclass_to_dict(self)}

    @classmethod
    def from_dict(cls, data: Any) -> "Item | None":
        if not isinstance(data, dict) or not data.get("id"):
            return None
        item = dataclass_from_dict(
            cls,
            {"url": "", **data},
            nested={"cover": CoverInfo, "kindle": KindleState, "cover_sync": CoverSyncState},
        )
        item.push_channels = PushChannels.from_dict(data.get("pushChannels"))
        return item


@dataclass
class ReaderDocument:
    title: str
    content_html: str
    byline: str = ""
    excerpt: str = ""
    site_name: str = ""
    word_count: int = 0
    retrieved_at: str | None = None
    cover_image_url: str | None = None

    def to_dict(self) -> dict:
        return dataclass_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "ReaderDocument | None":
        if not isinstance(data, dict):
            return None
        return dataclass_from_dict(cls, {"title": "", "contentHtml": "", **data})


@dataclass
class CoverImage:
    base64: str
    content_type: str = "image/png"
    created_at: str | None = None

    def to_dict(self) -> dict:
        return dataclass_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "CoverImage | None":
        if not isinstance(data, dict) or not data.get("base64"):
            return None
        return dataclass_from_dict(cls, data)


@dataclass
class DeviceRecord:
    owner_id: str
    device_id: str
    token: str
    token_hash: str
    platform: str = "ios"
    environment: str = "production"
    bundle_id: str | None = None
    app_version: str | None = None
    build_number: str | None = None
    registered_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict:
        return dataclass_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "DeviceRecord | None":
        if not isinstance(data, dict) or not data.get("deviceId"):
            return None
        return dataclass_from_dict(
            cls, {"ownerId": "", "token": "", "tokenHash": "", **data}
        )
