"""
Push notifications - device registry, APNs delivery and per-item channels.
"""

from .apns import ApnsClient, DeliveryResult, build_apns_payload, deliver_ios_push
from .channels import (
    ArticlePushService,
    build_ios_payload,
    ensure_push_channels,
    record_kindle_channel_state,
)
from .credentials import ApnsCredentials, ApnsTokenCache, der_to_jose_signature, get_apns_auth_token
from .devices import DeviceRegistry, hash_token
from .service import PUSH_TEST_MESSAGE_TYPE, PushDeliveryService

__all__ = [
    "ApnsClient",
    "ApnsCredentials",
    "ApnsTokenCache",
    "ArticlePushService",
    "DeliveryResult",
    "DeviceRegistry",
    "PushDeliveryService",
    "PUSH_TEST_MESSAGE_TYPE",
    "build_apns_payload",
    "build_ios_payload",
    "deliver_ios_push",
    "der_to_jose_signature",
    "ensure_push_channels",
    "get_apns_auth_token",
    "hash_token",
    "record_kindle_channel_state",
]
