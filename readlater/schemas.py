"""
Pydantic models for API request/response validation.

Fields are snake_case in Python and camelCase on the wire.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .jobs import EnqueueResult
from .models import DeviceRecord, ReaderDocument


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─────────────────────────────────────────────────────────────
# Read-later Schemas
# ─────────────────────────────────────────────────────────────

class ItemRequest(CamelModel):
    """Request body naming a saved item."""
    id: str


class EnqueueResponse(CamelModel):
    ok: bool
    queued: bool = False
    skipped: bool = False
    in_progress: bool = False
    queue_missing: bool = False
    queue_failed: bool = False
    reason: str | None = None
    item: dict | None = None

    @classmethod
    def from_result(cls, result: EnqueueResult) -> "EnqueueResponse":
        return cls(
            ok=not (result.queue_missing or result.queue_failed),
            queued=result.queued,
            skipped=result.skipped,
            in_progress=result.in_progress,
            queue_missing=result.queue_missing,
            queue_failed=result.queue_failed,
            reason=result.reason,
            item=result.item.to_dict() if result.item else None,
        )


class CoverSyncStatusResponse(CamelModel):
    ok: bool = True
    status: str
    done: bool
    item: dict


class ReaderResponse(CamelModel):
    ok: bool
    reader: dict | None = None
    error: str | None = None

    @classmethod
    def from_reader(cls, reader: ReaderDocument | None) -> "ReaderResponse":
        if reader is None:
            return cls(ok=False, error="Could not parse article content")
        return cls(ok=True, reader=reader.to_dict())


# ─────────────────────────────────────────────────────────────
# Push Schemas
# ─────────────────────────────────────────────────────────────

class PushDeviceRequest(CamelModel):
    """Device registration from the iOS app."""
    device_id: str
    token: str
    platform: str | None = None
    environment: str | None = None
    bundle_id: str | None = None
    app_version: str | None = None
    build_number: str | None = None


class PushDeviceDeleteRequest(CamelModel):
    device_id: str


class PushDeviceResponse(CamelModel):
    ok: bool = True
    registered: bool | None = None
    removed: bool | None = None
    missing: bool | None = None
    device_id: str
    owner_id: str

    @classmethod
    def from_record(cls, record: DeviceRecord) -> "PushDeviceResponse":
        return cls(registered=True, device_id=record.device_id, owner_id=record.owner_id)


class PushTestRequest(CamelModel):
    owner_id: str | None = None
    device_id: str | None = None
    item_id: str | None = None
    title: str | None = None
    subtitle: str | None = None
    body: str | None = None
    cover_url: str | None = None


class PushTestResponse(CamelModel):
    ok: bool
    queued: bool
    owner_id: str
    target_device_id: str | None = None
    event_id: str


class HealthResponse(CamelModel):
    status: str
    version: str
    cover_generation_enabled: bool
    kindle_enabled: bool
    push_enabled: bool
