"""
Configuration and application state management.
"""

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv
from fastapi import HTTPException

if TYPE_CHECKING:
    from .pipeline import ReadLaterPipeline
    from .storage import KeyValueStore, MessageQueue

# Load environment variables
load_dotenv()


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


class Config:
    """Application configuration from environment."""
    DB_PATH: Path = Path(os.getenv("DB_PATH", "./data/readlater.db"))
    PORT: int = int(os.getenv("PORT", "5005"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Optional API key protecting the HTTP surface
    AUTH_API_KEY: str = os.getenv("AUTH_API_KEY", "")

    # Cover generation (OpenAI Responses API with the image_generation tool)
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    COVER_MODEL: str = os.getenv("COVER_MODEL", "gpt-5")
    COVER_IMAGE_MODEL: str = os.getenv("COVER_IMAGE_MODEL", "gpt-image-1.5")
    COVER_STREAMING: bool = _parse_bool(os.getenv("COVER_STREAMING"), default=False)

    # Kindle delivery via Resend
    RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
    KINDLE_TO_EMAIL: str = os.getenv("KINDLE_TO_EMAIL", "")
    KINDLE_FROM_EMAIL: str = os.getenv("KINDLE_FROM_EMAIL", "")

    # APNs token-based auth
    APNS_TEAM_ID: str = os.getenv("APNS_TEAM_ID", "")
    APNS_KEY_ID: str = os.getenv("APNS_KEY_ID", "")
    APNS_PRIVATE_KEY_P8: str = os.getenv("APNS_PRIVATE_KEY_P8", "")
    APNS_TOPIC: str = os.getenv("APNS_TOPIC", "")

    READ_LATER_DEFAULT_OWNER_ID: str = os.getenv("READ_LATER_DEFAULT_OWNER_ID", "default")
    READ_LATER_PUBLIC_ORIGIN: str = os.getenv("READ_LATER_PUBLIC_ORIGIN", "http://localhost:5005")

    # Headless rendering for client-rendered pages
    ENABLE_JS_RENDER: bool = _parse_bool(os.getenv("ENABLE_JS_RENDER"), default=True)
    JS_RENDER_TIMEOUT: int = int(os.getenv("JS_RENDER_TIMEOUT", "15000"))  # ms

    # X API v2 app-only token for x.com status links
    X_API_BEARER_TOKEN: str = os.getenv("X_API_BEARER_TOKEN", "")

    # Queue worker
    WORKER_POLL_INTERVAL: float = _parse_float(os.getenv("WORKER_POLL_INTERVAL"), 1.0)  # seconds
    WORKER_BATCH_SIZE: int = int(os.getenv("WORKER_BATCH_SIZE", "10"))
    # Run queue consumers inside the API process instead of separate workers
    RUN_QUEUE_WORKERS: bool = _parse_bool(os.getenv("RUN_QUEUE_WORKERS"), default=False)

    @classmethod
    def has_kindle_config(cls) -> bool:
        """Check if every Kindle delivery setting is present."""
        return bool(cls.RESEND_API_KEY and cls.KINDLE_TO_EMAIL and cls.KINDLE_FROM_EMAIL)

    @classmethod
    def has_apns_config(cls) -> bool:
        """Check if APNs signing credentials are configured."""
        return bool(cls.APNS_TEAM_ID and cls.APNS_KEY_ID and cls.APNS_PRIVATE_KEY_P8)


config = Config()


def setup_logging(level: str | None = None) -> None:
    """Configure root logging for the server and worker processes."""
    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class AppState:
    """Shared application state."""
    store: "KeyValueStore | None" = None
    sync_queue: "MessageQueue | None" = None
    push_queue: "MessageQueue | None" = None
    pipeline: "ReadLaterPipeline | None" = None


state = AppState()


def get_pipeline() -> "ReadLaterPipeline":
    """Dependency to get the wired enrichment pipeline."""
    if not state.pipeline:
        raise HTTPException(status_code=500, detail="Pipeline not initialized")
    return state.pipeline
