"""
Push routes: device registration and test notifications.
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from ..auth import verify_api_key
from ..config import get_pipeline
from ..converters import now_iso
from ..exceptions import QueueUnavailableError
from ..pipeline import ReadLaterPipeline
from ..push import PUSH_TEST_MESSAGE_TYPE
from ..push.devices import normalize_device_id, normalize_metadata, normalize_token, token_suffix
from ..reader.utils import absolutize_url
from ..schemas import (
    PushDeviceDeleteRequest,
    PushDeviceRequest,
    PushDeviceResponse,
    PushTestRequest,
    PushTestResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["push"], dependencies=[Depends(verify_api_key)])

TEST_ALERT_TITLE = "Read Later Test Push"
TEST_ALERT_SUBTITLE = "Read Later"


# ─────────────────────────────────────────────────────────────
# Devices
# ─────────────────────────────────────────────────────────────

@router.post("/api/read-later/push-device")
async def register_push_device(
    request: PushDeviceRequest,
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)]
) -> PushDeviceResponse:
    """Register or refresh an iOS device token."""
    if not normalize_device_id(request.device_id) or not normalize_token(request.token):
        logger.warning("push_device_invalid_payload stage=register")
        raise HTTPException(status_code=400, detail="Invalid payload")

    record = await pipeline.devices.upsert(
        device_id=request.device_id,
        token=request.token,
        platform=request.platform,
        environment=request.environment,
        bundle_id=request.bundle_id,
        app_version=request.app_version,
        build_number=request.build_number,
    )
    logger.info(
        f"push_device_registered owner={record.owner_id} device={record.device_id} "
        f"environment={record.environment} token={token_suffix(record.token_hash)}"
    )
    return PushDeviceResponse.from_record(record)


@router.delete("/api/read-later/push-device")
async def unregister_push_device(
    request: PushDeviceDeleteRequest,
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)]
) -> PushDeviceResponse:
    """Remove a registered device."""
    device_id = normalize_device_id(request.device_id)
    if not device_id:
        logger.warning("push_device_invalid_payload stage=unregister")
        raise HTTPException(status_code=400, detail="Invalid payload")

    result = await pipeline.devices.remove(None, device_id)
    if result.removed:
        logger.info(f"push_device_unregistered owner={result.owner_id} device={device_id}")
    else:
        logger.info(f"push_device_unregistered_missing owner={result.owner_id} device={device_id}")

    return PushDeviceResponse(
        removed=result.removed,
        missing=result.missing,
        device_id=device_id,
        owner_id=result.owner_id,
    )


# ─────────────────────────────────────────────────────────────
# Test push
# ─────────────────────────────────────────────────────────────

@router.post("/api/push/test")
async def queue_test_push(
    request: PushTestRequest,
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)]
) -> PushTestResponse:
    """Queue a test notification for one or all of the owner's devices."""
    owner_id = normalize_metadata(request.owner_id, 120) or pipeline.devices.default_owner_id
    device_id = normalize_device_id(request.device_id) or None
    now = now_iso()
    event_id = f"test_{uuid.uuid4()}"

    notification: dict = {
        "alert": {
            "title": normalize_metadata(request.title, 120) or TEST_ALERT_TITLE,
            "subtitle": normalize_metadata(request.subtitle, 120) or TEST_ALERT_SUBTITLE,
            "body": normalize_metadata(request.body, 240) or f"Triggered at {now}",
        },
    }
    cover_url = absolutize_url(normalize_metadata(request.cover_url, 2048), "")
    if cover_url:
        notification["media"] = [{"type": "image", "url": cover_url}]

    payload = {
        "type": PUSH_TEST_MESSAGE_TYPE,
        "ownerId": owner_id,
        "targetDeviceId": device_id,
        "itemId": normalize_metadata(request.item_id, 200) or f"test-item-{uuid.uuid4().hex[:8]}",
        "eventId": event_id,
        "savedAt": now,
        "notification": notification,
    }

    try:
        await pipeline.queue_test_push(payload)
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    logger.info(f"ios_test_push_queued owner={owner_id} target={device_id} event={event_id}")
    return PushTestResponse(
        ok=True,
        queued=True,
        owner_id=owner_id,
        target_device_id=device_id,
        event_id=event_id,
    )
