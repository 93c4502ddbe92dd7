"""
Push device registry.

Key layout:
- push_device:{ownerId}:{deviceId}  device record
- push_token:{tokenHash}            {ownerId, deviceId, tokenHash, updatedAt}

A token hash is linked to at most one device: registering a token that
belongs to another device removes that device.
"""

import hashlib
import logging
import re
from dataclasses import dataclass

from ..converters import now_iso
from ..models import DeviceRecord
from ..storage import KeyValueStore

logger = logging.getLogger(__name__)

PUSH_DEVICE_PREFIX = "push_device:"
PUSH_TOKEN_PREFIX = "push_token:"
DEFAULT_OWNER_ID = "default"

_WHITESPACE = re.compile(r"\s+")


def normalize_device_id(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:200]


def normalize_token(value) -> str:
    if not isinstance(value, str):
        return ""
    return _WHITESPACE.sub("", value)[:4096]


def normalize_environment(value) -> str:
    normalized = value.strip().lower() if isinstance(value, str) else ""
    return "development" if normalized == "development" else "production"


def normalize_platform(value) -> str:
    normalized = value.strip().lower() if isinstance(value, str) else ""
    return normalized or "ios"


def normalize_metadata(value, max_length: int = 200) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip()[:max_length] or None


def normalize_owner_id(value) -> str:
    return normalize_metadata(value, 120) or DEFAULT_OWNER_ID


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_suffix(token_hash: str | None) -> str | None:
    """Last characters of a token hash, safe for logs."""
    if not token_hash:
        return None
    return token_hash[-8:]


def device_key(owner_id: str, device_id: str) -> str:
    return f"{PUSH_DEVICE_PREFIX}{owner_id}:{device_id}"


def device_prefix(owner_id: str) -> str:
    return f"{PUSH_DEVICE_PREFIX}{owner_id}:"


def token_key(token_hash: str) -> str:
    return f"{PUSH_TOKEN_PREFIX}{token_hash}"


@dataclass
class RemoveResult:
    removed: bool
    missing: bool = False
    owner_id: str | None = None
    device_id: str | None = None
    token_hash: str | None = None


class DeviceRegistry:
    """Registered push devices, indexed by owner and by token hash."""

    def __init__(self, store: KeyValueStore, default_owner_id: str = DEFAULT_OWNER_ID):
        self.store = store
        self.default_owner_id = default_owner_id or DEFAULT_OWNER_ID

    def _owner(self, owner_id) -> str:
        return normalize_metadata(owner_id, 120) or self.default_owner_id

    @staticmethod
    def _is_linked(index, owner_id: str, device_id: str) -> bool:
        return (
            isinstance(index, dict)
            and index.get("ownerId") == owner_id
            and index.get("deviceId") == device_id
        )

    async def get(self, owner_id: str, device_id: str) -> DeviceRecord | None:
        key = device_key(self._owner(owner_id), normalize_device_id(device_id))
        return DeviceRecord.from_dict(await self.store.get(key))

    async def upsert(
        self,
        device_id: str,
        token: str,
        owner_id: str | None = None,
        platform: str | None = None,
        environment: str | None = None,
        bundle_id: str | None = None,
        app_version: str | None = None,
        build_number: str | None = None,
    ) -> DeviceRecord:
        """
        Register or refresh a device.

        Raises:
            ValueError: If the device id or token is empty after normalization
        """
        owner = self._owner(owner_id)
        device = normalize_device_id(device_id)
        normalized_token = normalize_token(token)
        if not device or not normalized_token:
            raise ValueError("Invalid push device payload")

        now = now_iso()
        token_hash = hash_token(normalized_token)
        key = device_key(owner, device)

        existing = DeviceRecord.from_dict(await self.store.get(key))
        if existing and existing.token_hash and existing.token_hash != token_hash:
            old_index = await self.store.get(token_key(existing.token_hash))
            if self._is_linked(old_index, owner, device):
                await self.store.delete(token_key(existing.token_hash))

        linked = await self.store.get(token_key(token_hash))
        if (
            isinstance(linked, dict)
            and linked.get("ownerId")
            and linked.get("deviceId")
            and not self._is_linked(linked, owner, device)
        ):
            logger.info(
                f"push_device_token_rebound from={linked['ownerId']}:{linked['deviceId']} "
                f"to={owner}:{device} token={token_suffix(token_hash)}"
            )
            await self.store.delete(device_key(linked["ownerId"], linked["deviceId"]))

        record = DeviceRecord(
            owner_id=owner,
            device_id=device,
            token=normalized_token,
            token_hash=token_hash,
            platform=normalize_platform(platform),
            environment=normalize_environment(environment),
            bundle_id=normalize_metadata(bundle_id, 200),
            app_version=normalize_metadata(app_version, 120),
            build_number=normalize_metadata(build_number, 120),
            registered_at=(existing.registered_at if existing else None) or now,
            updated_at=now,
        )

        await self.store.put(key, record.to_dict())
        await self.store.put(
            token_key(token_hash),
            {"ownerId": owner, "deviceId": device, "tokenHash": token_hash, "updatedAt": now},
        )
        return record

    async def remove_by_record(self, record: DeviceRecord | None) -> RemoveResult:
        """Delete a device, and its token index only if it still points here."""
        if record is None:
            return RemoveResult(removed=False)
        owner = normalize_owner_id(record.owner_id)
        device = normalize_device_id(record.device_id)
        token_hash = normalize_metadata(record.token_hash, 128)
        if not device:
            return RemoveResult(removed=False)

        await self.store.delete(device_key(owner, device))

        if token_hash:
            linked = await self.store.get(token_key(token_hash))
            if self._is_linked(linked, owner, device):
                await self.store.delete(token_key(token_hash))

        return RemoveResult(removed=True, owner_id=owner, device_id=device, token_hash=token_hash)

    async def remove(self, owner_id: str | None, device_id: str) -> RemoveResult:
        owner = self._owner(owner_id)
        device = normalize_device_id(device_id)
        if not device:
            return RemoveResult(removed=False, missing=True, owner_id=owner)

        existing = DeviceRecord.from_dict(await self.store.get(device_key(owner, device)))
        if existing is None:
            return RemoveResult(removed=False, missing=True, owner_id=owner, device_id=device)

        result = await self.remove_by_record(existing)
        result.owner_id = owner
        result.device_id = device
        return result

    async def list_for_owner(self, owner_id: str | None) -> list[DeviceRecord]:
        records = []
        for key in await self.store.list_keys(device_prefix(self._owner(owner_id))):
            record = DeviceRecord.from_dict(await self.store.get(key))
            if record is not None:
                records.append(record)
        return records

    async def resolve_token(self, token: str) -> DeviceRecord | None:
        """Device currently linked to a raw token, if any."""
        normalized = normalize_token(token)
        if not normalized:
            return None
        linked = await self.store.get(token_key(hash_token(normalized)))
        if not isinstance(linked, dict) or not linked.get("ownerId") or not linked.get("deviceId"):
            return None
        return DeviceRecord.from_dict(await self.store.get(device_key(linked["ownerId"], linked["deviceId"])))
