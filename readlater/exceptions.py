"""
Error types and HTTP exception utilities.

Pipeline code raises the ReadLaterError family where work fails; the job
boundary classifies them into error codes. Route handlers use the require_*
helpers to turn missing records into 404s.
"""

from typing import TypeVar

from fastapi import HTTPException

T = TypeVar("T")


class ReadLaterError(Exception):
    """Base class for enrichment pipeline errors."""


class ConfigMissingError(ReadLaterError):
    """A required credential or setting is not configured."""


class UpstreamError(ReadLaterError):
    """An external API failed in a way that may succeed on retry."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ContentUnavailableError(ReadLaterError):
    """No readable content could be extracted for an item."""


class ReaderFetchError(ReadLaterError):
    """Fetching or rendering the source page failed."""


class QueueUnavailableError(ReadLaterError):
    """The background queue is missing or rejected a message."""


class VersionConflictError(ReadLaterError):
    """A conditional write lost against a concurrent writer."""


class ApnsCredentialsError(ConfigMissingError):
    """APNs signing credentials are missing or unusable."""


def require_resource(resource: T | None, detail: str = "Resource not found") -> T:
    """
    Raise 404 if resource is None, otherwise return the resource.

    Usage:
        item = require_resource(await items.get(item_id), "Item not found")
    """
    if resource is None:
        raise HTTPException(status_code=404, detail=detail)
    return resource


def require_item(item: T | None) -> T:
    """Raise 404 if read-later item is None."""
    return require_resource(item, "Item not found")


def require_cover(cover: T | None) -> T:
    """Raise 404 if the cover image is None."""
    return require_resource(cover, "Cover not found")
