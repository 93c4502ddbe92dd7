"""
APNs delivery - build alert payloads and POST them to each registered device.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from ..exceptions import ApnsCredentialsError
from ..models import DeviceRecord
from .credentials import ApnsCredentials, ApnsTokenCache, get_apns_auth_token
from .devices import DeviceRegistry

logger = logging.getLogger(__name__)

APNS_PRODUCTION_HOST = "api.push.apple.com"
APNS_SANDBOX_HOST = "api.sandbox.push.apple.com"
APNS_TIMEOUT_SECONDS = 10
DEFAULT_APNS_TOPIC = "com.readlater.app"
PUSH_NOTIFICATION_MESSAGE_TYPE = "push.notification.requested"

ALLOWED_INTERRUPTION_LEVELS = frozenset({"passive", "active", "time-sensitive", "critical"})
ALLOWED_MEDIA_TYPES = frozenset({"image", "gif", "video", "audio", "file"})
TERMINAL_TOKEN_REASONS = frozenset({
    "BadDeviceToken",
    "Unregistered",
    "DeviceTokenNotForTopic",
    "TopicDisallowed",
    "BadTopic",
})
MAX_MEDIA = 3

DEFAULT_ALERT_TITLE = "Read Later"
DEFAULT_ALERT_SUBTITLE = "Notification"
DEFAULT_ALERT_BODY = "Open Read Later"


# ─────────────────────────────────────────────────────────────
# Payload normalization
# ─────────────────────────────────────────────────────────────

def _aps_string(value: Any, max_length: int = 120) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip()[:max_length] or None


def _object(value: Any) -> dict | None:
    return value if isinstance(value, dict) else None


def normalize_interruption_level(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in ALLOWED_INTERRUPTION_LEVELS else None


def normalize_relevance_score(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0 or value > 1:
        return None
    return round(float(value), 3)


def normalize_mutable_content(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "1"):
            return True
        if normalized in ("false", "0"):
            return False
    return None


def normalize_media(value: Any) -> list[dict]:
    """At most three http(s) attachments with a known media type."""
    if not isinstance(value, list):
        return []

    media = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        url = _aps_string(entry.get("url") or entry.get("href"), 2048)
        if not url:
            continue
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        media_type = (_aps_string(entry.get("type"), 32) or "image").lower()
        media.append({
            "type": media_type if media_type in ALLOWED_MEDIA_TYPES else "image",
            "url": url,
            "mimeType": _aps_string(entry.get("mimeType"), 120),
            "filename": _aps_string(entry.get("filename"), 120),
        })
        if len(media) >= MAX_MEDIA:
            break
    return media


def _normalize_data(value: Any) -> dict | None:
    data = _object(value)
    if data is None:
        return None
    try:
        return json.loads(json.dumps(data))
    except (TypeError, ValueError):
        return None


def build_apns_payload(payload: dict | None) -> dict:
    """APNs request body for a queued push message."""
    payload = payload or {}
    notification = _object(payload.get("notification")) or {}
    alert = _object(notification.get("alert")) or {}

    title = _aps_string(alert.get("title"), 120) or DEFAULT_ALERT_TITLE
    subtitle = _aps_string(alert.get("subtitle"), 120) or DEFAULT_ALERT_SUBTITLE
    body = _aps_string(alert.get("body"), 240) or DEFAULT_ALERT_BODY

    media = normalize_media(notification.get("media"))
    thread_id = _aps_string(notification.get("threadId"))
    category = _aps_string(notification.get("category"))
    target_content_id = _aps_string(notification.get("targetContentId"))
    interruption_level = normalize_interruption_level(notification.get("interruptionLevel"))
    relevance_score = normalize_relevance_score(notification.get("relevanceScore"))
    mutable_override = normalize_mutable_content(notification.get("mutableContent"))
    mutable_content = bool(media) if mutable_override is None else mutable_override

    aps = {
        "alert": {"title": title, "subtitle": subtitle, "body": body},
        "sound": "default",
        "thread-id": thread_id,
        "category": category,
        "target-content-id": target_content_id,
        "interruption-level": interruption_level,
        "relevance-score": relevance_score,
        "mutable-content": 1 if mutable_content else None,
    }

    return {
        "aps": {key: value for key, value in aps.items() if value is not None},
        "type": payload.get("type") or PUSH_NOTIFICATION_MESSAGE_TYPE,
        "source": payload.get("source") or "read-later",
        "itemId": payload.get("itemId"),
        "savedAt": payload.get("savedAt"),
        "eventId": payload.get("eventId"),
        "notification": {
            "alert": {"title": title, "subtitle": subtitle, "body": body},
            "threadId": thread_id,
            "category": category,
            "targetContentId": target_content_id,
            "interruptionLevel": interruption_level,
            "relevanceScore": relevance_score,
            "mutableContent": mutable_content,
            "media": media,
        },
        "data": _normalize_data(payload.get("data")),
    }


# ─────────────────────────────────────────────────────────────
# HTTP/2 client
# ─────────────────────────────────────────────────────────────

@dataclass
class ApnsResponse:
    ok: bool
    status: int
    reason: str | None = None


class ApnsClient:
    """Sends notifications to APNs using token-based auth."""

    def __init__(
        self,
        credentials: ApnsCredentials,
        topic: str | None = None,
        timeout: float = APNS_TIMEOUT_SECONDS,
        token_cache: ApnsTokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credentials = credentials
        self.topic = (topic or "").strip()
        self.timeout = timeout
        self.token_cache = token_cache or ApnsTokenCache()
        self._transport = transport

    def auth_token(self) -> str:
        return get_apns_auth_token(self.credentials, self.token_cache)

    @staticmethod
    def host_for(device: DeviceRecord) -> str:
        return APNS_SANDBOX_HOST if device.environment == "development" else APNS_PRODUCTION_HOST

    def topic_for(self, device: DeviceRecord) -> str:
        if self.topic:
            return self.topic
        if device.bundle_id and device.bundle_id.strip():
            return device.bundle_id.strip()
        return DEFAULT_APNS_TOPIC

    def open_session(self) -> httpx.AsyncClient:
        """HTTP/2 client shared by every request of one fan-out."""
        return httpx.AsyncClient(http2=True, timeout=self.timeout, transport=self._transport)

    async def send(
        self,
        auth_token: str,
        device: DeviceRecord,
        payload: dict,
        http: httpx.AsyncClient | None = None,
    ) -> ApnsResponse:
        url = f"https://{self.host_for(device)}/3/device/{device.token}"
        headers = {
            "authorization": f"bearer {auth_token}",
            "apns-topic": self.topic_for(device),
            "apns-push-type": "alert",
            "apns-priority": "10",
        }
        if http is not None:
            response = await http.post(url, headers=headers, json=build_apns_payload(payload))
        else:
            async with self.open_session() as client:
                response = await client.post(url, headers=headers, json=build_apns_payload(payload))

        reason = None
        if response.is_error:
            try:
                body = response.json()
                reason = body.get("reason") if isinstance(body, dict) and isinstance(body.get("reason"), str) else None
            except ValueError:
                reason = None
        return ApnsResponse(ok=not response.is_error, status=response.status_code, reason=reason)


# ─────────────────────────────────────────────────────────────
# Fan-out
# ─────────────────────────────────────────────────────────────

@dataclass
class DeliveryResult:
    ok: bool
    reason: str
    success_count: int = 0
    failed_count: int = 0
    pruned_count: int = 0
    attempted_count: int = 0
    error: Exception | None = None


async def deliver_ios_push(
    client: ApnsClient,
    devices: DeviceRegistry,
    owner_id: str,
    payload: dict,
    target_device_id: str | None = None,
) -> DeliveryResult:
    """
    Deliver payload to every iOS device of owner_id (or just the target).

    Devices rejected with a terminal token reason are removed.
    """
    target = (target_device_id or "").strip()
    valid = [
        device for device in await devices.list_for_owner(owner_id)
        if device.platform == "ios" and device.token and (not target or device.device_id == target)
    ]

    if not valid:
        return DeliveryResult(ok=False, reason="no_devices")

    try:
        auth_token = client.auth_token()
    except (ApnsCredentialsError, ValueError) as e:
        return DeliveryResult(ok=False, reason="auth_failed", attempted_count=len(valid), error=e)

    success = failed = pruned = 0
    async with client.open_session() as http:
        for device in valid:
            try:
                result = await client.send(auth_token, device, payload, http=http)
            except Exception as e:
                failed += 1
                logger.error(f"ios_push_device_request_failed owner={owner_id} device={device.device_id}: {e}")
                continue

            if result.ok:
                success += 1
                continue

            failed += 1
            if result.reason in TERMINAL_TOKEN_REASONS:
                removal = await devices.remove_by_record(device)
                if removal.removed:
                    pruned += 1
            logger.warning(
                f"ios_push_device_failed owner={owner_id} device={device.device_id} "
                f"status={result.status} reason={result.reason}"
            )

    if success > 0:
        reason, ok = "sent", True
    elif pruned > 0 and failed == pruned:
        reason, ok = "no_valid_devices", False
    else:
        reason, ok = "delivery_failed", False

    return DeliveryResult(
        ok=ok,
        reason=reason,
        success_count=success,
        failed_count=failed,
        pruned_count=pruned,
        attempted_count=len(valid),
    )
