"""
Miscellaneous routes: health check.
"""

from fastapi import APIRouter

from .. import __version__
from ..config import config, state
from ..schemas import HealthResponse

router = APIRouter(tags=["misc"])


@router.get("/health")
async def health_check() -> HealthResponse:
    """API health check."""
    pipeline = state.pipeline
    return HealthResponse(
        status="ok",
        version=__version__,
        cover_generation_enabled=bool(pipeline and pipeline.cover_service.generator is not None),
        kindle_enabled=config.has_kindle_config(),
        push_enabled=config.has_apns_config(),
    )
