"""
Read Later API Server

FastAPI application providing endpoints for:
- Kindle delivery and cover jobs
- Cover images and reader documents
- Push device registration and test pushes

Run with:
    python -m uvicorn readlater.server:app --port 5005
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .config import config, setup_logging, state
from .pipeline import build_pipeline
from .routes import misc_router, push_router, read_later_public_router, read_later_router
from .storage import SqliteKeyValueStore, SqliteQueue
from .worker import start_queue_consumers, stop_queue_consumers

logger = logging.getLogger(__name__)

# Renderer started by the lifespan, stopped on shutdown
_renderer = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application resources."""
    global _renderer

    # Startup - skip if already initialized (e.g., by tests)
    if state.pipeline is None:
        setup_logging()
        state.store = SqliteKeyValueStore(config.DB_PATH)
        state.sync_queue = SqliteQueue(config.DB_PATH, "sync")
        state.push_queue = SqliteQueue(config.DB_PATH, "push")

        if config.ENABLE_JS_RENDER:
            try:
                from .reader.renderer import JSRenderer
                _renderer = JSRenderer(timeout=config.JS_RENDER_TIMEOUT)
                await _renderer.start()
                logger.info("JS renderer initialized")
            except ImportError as e:
                logger.warning(f"Could not initialize JS renderer: {e}")
                _renderer = None
            except Exception as e:
                logger.warning(f"JS renderer initialization failed: {e}")
                _renderer = None

        state.pipeline = build_pipeline(state.store, state.sync_queue, state.push_queue, renderer=_renderer)

        if not config.has_kindle_config():
            logger.warning("Kindle delivery not configured. Set RESEND_API_KEY, KINDLE_TO_EMAIL and KINDLE_FROM_EMAIL.")
        if not config.has_apns_config():
            logger.warning("APNs not configured. Set APNS_TEAM_ID, APNS_KEY_ID and APNS_PRIVATE_KEY_P8.")

        if config.RUN_QUEUE_WORKERS:
            await start_queue_consumers(state.pipeline)

    yield

    # Shutdown
    await stop_queue_consumers()

    if _renderer:
        try:
            await _renderer.stop()
        except Exception as e:
            logger.warning(f"Error stopping JS renderer: {e}")
        _renderer = None


app = FastAPI(
    title="Read Later API",
    version=__version__,
    lifespan=lifespan
)

# Include routers
app.include_router(misc_router)
app.include_router(read_later_public_router)
app.include_router(read_later_router)
app.include_router(push_router)
