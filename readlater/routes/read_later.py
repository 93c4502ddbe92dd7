"""
Read-later routes: Kindle sync, cover jobs, covers and reader documents.
"""

import base64
import binascii
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from ..auth import verify_api_key
from ..config import get_pipeline
from ..exceptions import require_cover, require_item
from ..models import COVER_FAILED, COVER_SUCCEEDED
from ..pipeline import ReadLaterPipeline
from ..readiness import refresh_push_readiness
from ..schemas import CoverSyncStatusResponse, EnqueueResponse, ItemRequest, ReaderResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/read-later",
    tags=["read-later"],
    dependencies=[Depends(verify_api_key)]
)

# Covers are linked from push notifications, so they are served without auth
public_router = APIRouter(prefix="/api/read-later", tags=["read-later"])

COVER_CACHE_HIT = "public, max-age=86400"
COVER_CACHE_MISS = "public, max-age=300"


def _clean_id(value: str) -> str:
    item_id = (value or "").strip()
    if not item_id:
        raise HTTPException(status_code=400, detail="Missing id")
    return item_id


# ─────────────────────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────────────────────

@router.post("/kindle-sync")
async def request_kindle_sync(
    request: ItemRequest,
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)]
) -> EnqueueResponse:
    """Force a Kindle delivery for an item."""
    item_id = _clean_id(request.id)
    require_item(await pipeline.items.get(item_id))

    result = await pipeline.request_kindle_sync(item_id)
    return EnqueueResponse.from_result(result)


@router.post("/regenerate-cover")
async def regenerate_cover(
    request: ItemRequest,
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)]
) -> EnqueueResponse:
    """Discard the current cover and queue a new cover job."""
    item_id = _clean_id(request.id)
    require_item(await pipeline.items.get(item_id))

    result = await pipeline.regenerate_cover(item_id)
    return EnqueueResponse.from_result(result)


@router.get("/cover-sync")
async def get_cover_sync_status(
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)],
    id: str = Query(default="")
) -> CoverSyncStatusResponse:
    """Poll the cover job for an item."""
    item = require_item(await pipeline.items.get(_clean_id(id)))

    if item.cover_sync and item.cover_sync.status:
        status = item.cover_sync.status
    elif item.cover and item.cover.updated_at:
        status = COVER_SUCCEEDED
    else:
        status = "idle"

    return CoverSyncStatusResponse(
        status=status,
        done=status in (COVER_FAILED, COVER_SUCCEEDED, "idle"),
        item=item.to_dict(),
    )


# ─────────────────────────────────────────────────────────────
# Reader
# ─────────────────────────────────────────────────────────────

@router.get("/reader")
async def get_reader(
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)],
    id: str = Query(default=""),
    refresh: bool = False
) -> ReaderResponse:
    """Cached reader document for an item, building it if needed."""
    item = require_item(await pipeline.items.get(_clean_id(id)))

    reader = await pipeline.reader.fetch_and_cache_reader(item.id, item.url, item.title, force_refresh=refresh)
    if reader is not None:
        await refresh_push_readiness(pipeline.readiness, pipeline.article_push, item.id, source="reader")
    else:
        logger.info(f"reader_unavailable item={item.id} url={item.url}")

    return ReaderResponse.from_reader(reader)


# ─────────────────────────────────────────────────────────────
# Cover image
# ─────────────────────────────────────────────────────────────

@public_router.get("/cover")
async def get_cover(
    pipeline: Annotated[ReadLaterPipeline, Depends(get_pipeline)],
    id: str = Query(default="")
) -> Response:
    """Cover image bytes."""
    item_id = _clean_id(id)
    try:
        cover = require_cover(await pipeline.covers.get(item_id))
        data = base64.b64decode(cover.base64)
    except binascii.Error:
        logger.warning(f"cover_corrupt item={item_id}")
        raise HTTPException(status_code=404, detail="Cover not found", headers={"Cache-Control": COVER_CACHE_MISS})
    except HTTPException as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail, headers={"Cache-Control": COVER_CACHE_MISS})

    return Response(
        content=data,
        media_type=cover.content_type or "image/png",
        headers={"Cache-Control": COVER_CACHE_HIT},
    )
