"""
Push worker - consumes the push queue and records the outcome on each item.
"""

import logging
from typing import Any

from ..converters import now_iso
from ..models import (
    CHANNEL_FAILED,
    CHANNEL_SENT,
    CHANNEL_SKIPPED,
    READINESS_READY,
    IosChannelState,
    Item,
)
from ..storage import ItemRepository, parse_message_body
from .apns import ApnsClient, DeliveryResult, deliver_ios_push
from .channels import ensure_push_channels
from .devices import DEFAULT_OWNER_ID, DeviceRegistry

logger = logging.getLogger(__name__)

PUSH_TEST_MESSAGE_TYPE = "push.notification.test"


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def is_current_event(item: Item, event_id: str | None) -> bool:
    """A message is current unless the item already tracks a different event."""
    ios = item.push_channels.ios if item.push_channels else None
    current = ios.event_id if ios else None
    if not current:
        return True
    if not event_id:
        return False
    return current == event_id


class PushDeliveryService:
    """Delivers queued article and test pushes through APNs."""

    def __init__(
        self,
        items: ItemRepository,
        devices: DeviceRegistry,
        client: ApnsClient,
        default_owner_id: str = DEFAULT_OWNER_ID,
    ):
        self.items = items
        self.devices = devices
        self.client = client
        self.default_owner_id = default_owner_id

    def _owner(self, payload: dict) -> str:
        return _clean(payload.get("ownerId")) or self.default_owner_id

    async def send_test_push(self, payload: dict, target_device_id: str | None = None) -> DeliveryResult:
        owner_id = self._owner(payload)
        result = await deliver_ios_push(self.client, self.devices, owner_id, payload, target_device_id)

        if result.ok:
            logger.info(
                f"ios_test_push_sent owner={owner_id} target={target_device_id} "
                f"success={result.success_count} failed={result.failed_count} pruned={result.pruned_count}"
            )
        elif result.reason == "auth_failed":
            logger.error(f"ios_test_push_not_delivered owner={owner_id} reason=auth_failed: {result.error}")
        else:
            logger.warning(
                f"ios_test_push_not_delivered owner={owner_id} reason={result.reason} "
                f"failed={result.failed_count} pruned={result.pruned_count}"
            )
        return result

    async def _update_ios(self, item_id: str, event_id: str, status: str, last_error: str | None) -> Item | None:
        now = now_iso()

        def apply(current: Item) -> bool | None:
            if not is_current_event(current, event_id):
                return False
            channels = ensure_push_channels(current, now)
            channels.ios = IosChannelState(
                status=status,
                updated_at=now,
                event_id=event_id or channels.ios.event_id,
                last_error=last_error,
            )

        return await self.items.update(item_id, apply)

    async def process_message(self, payload: dict | None) -> None:
        if not isinstance(payload, dict):
            logger.warning("ios_push_invalid_message")
            return

        if payload.get("type") == PUSH_TEST_MESSAGE_TYPE:
            await self.send_test_push(payload, _clean(payload.get("targetDeviceId")) or None)
            return

        item_id = _clean(payload.get("itemId"))
        event_id = _clean(payload.get("eventId"))
        owner_id = self._owner(payload)

        if not item_id:
            logger.warning("ios_push_invalid_message")
            return

        item = await self.items.get(item_id)
        if item is None:
            logger.warning(f"ios_push_item_missing item={item_id}")
            return

        ensure_push_channels(item)
        if not is_current_event(item, event_id):
            logger.info(
                f"ios_push_stale_message item={item_id} event={event_id} "
                f"current={item.push_channels.ios.event_id}"
            )
            return

        # Redelivery of an event that already went out
        if item.push_channels.ios.status == CHANNEL_SENT and event_id and item.push_channels.ios.event_id == event_id:
            logger.info(f"ios_push_already_sent item={item_id} event={event_id}")
            return

        if item.push_channels.readiness.status != READINESS_READY:
            await self._update_ios(item_id, event_id, CHANNEL_SKIPPED, "Article is not push-ready")
            logger.warning(f"ios_push_skipped_not_ready item={item_id} event={event_id}")
            return

        result = await deliver_ios_push(self.client, self.devices, owner_id, payload)

        if result.reason == "no_devices":
            await self._update_ios(item_id, event_id, CHANNEL_SKIPPED, "No registered iOS devices")
            logger.info(f"ios_push_skipped_no_devices item={item_id} owner={owner_id} event={event_id}")
            return

        if result.reason == "auth_failed":
            await self._update_ios(item_id, event_id, CHANNEL_FAILED, "APNS credentials unavailable")
            logger.error(f"ios_push_auth_failed item={item_id} owner={owner_id} event={event_id}: {result.error}")
            return

        if result.ok:
            await self._update_ios(item_id, event_id, CHANNEL_SENT, None)
            logger.info(
                f"ios_push_sent item={item_id} owner={owner_id} event={event_id} "
                f"success={result.success_count} failed={result.failed_count} pruned={result.pruned_count}"
            )
            return

        if result.reason == "no_valid_devices":
            status, message = CHANNEL_SKIPPED, "No valid registered iOS devices"
        else:
            status, message = CHANNEL_FAILED, "Failed to deliver iOS push"
        await self._update_ios(item_id, event_id, status, message)
        logger.warning(
            f"ios_push_not_delivered item={item_id} owner={owner_id} event={event_id} status={status} "
            f"success={result.success_count} failed={result.failed_count} pruned={result.pruned_count}"
        )

    async def process_batch(self, messages: list[Any]) -> None:
        for message in messages:
            try:
                await self.process_message(parse_message_body(message))
            except Exception as e:
                logger.exception(f"ios_push_worker_failed: {e}")
