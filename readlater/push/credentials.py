"""
APNs token-based authentication.

Provider tokens are ES256 JWTs signed with the team's P-256 key (.p8,
PKCS#8 PEM). Apple accepts a token for up to an hour, so one signed token
is reused for a 50 minute window via ApnsTokenCache.
"""

import base64
import json
import logging
import time
from dataclasses import dataclass
from functools import cached_property

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..exceptions import ApnsCredentialsError

logger = logging.getLogger(__name__)

APNS_TOKEN_TTL_SECONDS = 50 * 60


def base64url_encode(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# ─────────────────────────────────────────────────────────────
# DER → JOSE signature conversion
# ─────────────────────────────────────────────────────────────

def _read_der_length(data: bytes, offset: int) -> tuple[int, int]:
    """Return (length, next_offset) for the DER length starting at offset."""
    if offset >= len(data):
        raise ValueError("Invalid DER signature")

    first = data[offset]
    if not first & 0x80:
        return first, offset + 1

    length_bytes = first & 0x7F
    if length_bytes < 1 or length_bytes > 4:
        raise ValueError("Invalid DER signature length")
    if offset + 1 + length_bytes > len(data):
        raise ValueError("Invalid DER signature length bytes")

    length = int.from_bytes(data[offset + 1:offset + 1 + length_bytes], "big")
    return length, offset + 1 + length_bytes


def _read_der_integer(data: bytes, offset: int, end: int, name: str) -> tuple[bytes, int]:
    if offset >= len(data) or data[offset] != 0x02:
        raise ValueError(f"Invalid DER signature {name} marker")
    length, offset = _read_der_length(data, offset + 1)
    value_end = offset + length
    if value_end > end:
        raise ValueError(f"Invalid DER signature {name} length")
    return data[offset:value_end], value_end


def _normalize_integer(value: bytes, target_length: int) -> bytes:
    start = 0
    while start < len(value) - 1 and value[start] == 0:
        start += 1
    trimmed = value[start:]
    if len(trimmed) > target_length:
        raise ValueError("Invalid ECDSA signature integer length")
    return trimmed.rjust(target_length, b"\x00")


def der_to_jose_signature(der: bytes, output_length: int = 64) -> bytes:
    """
    Convert an ASN.1 DER ECDSA signature to the fixed-width r‖s form JWS uses.

    Raises:
        ValueError: If the input is not a well-formed DER signature
    """
    if not der:
        raise ValueError("Invalid DER signature")
    if der[0] != 0x30:
        raise ValueError("Invalid DER signature sequence")

    sequence_length, offset = _read_der_length(der, 1)
    sequence_end = offset + sequence_length
    if sequence_end > len(der):
        raise ValueError("Invalid DER signature sequence length")

    r, offset = _read_der_integer(der, offset, sequence_end, "r")
    s, _ = _read_der_integer(der, offset, sequence_end, "s")

    coordinate_length = output_length // 2
    return _normalize_integer(r, coordinate_length) + _normalize_integer(s, coordinate_length)


# ─────────────────────────────────────────────────────────────
# Credentials and token cache
# ─────────────────────────────────────────────────────────────

@dataclass
class ApnsTokenCache:
    token: str | None = None
    team_id: str | None = None
    key_id: str | None = None
    issued_at: int = 0
    expires_at: int = 0

    def valid_for(self, team_id: str, key_id: str, now: int) -> bool:
        return (
            bool(self.token)
            and self.team_id == team_id
            and self.key_id == key_id
            and now < self.expires_at
        )


class ApnsCredentials:
    """Team id, key id and the .p8 signing key."""

    def __init__(self, team_id: str, key_id: str, private_key_pem: str):
        self.team_id = (team_id or "").strip()
        self.key_id = (key_id or "").strip()
        # Keys pasted into env vars often carry literal "\n" sequences
        self.private_key_pem = (private_key_pem or "").replace("\\n", "\n").strip()

    @property
    def configured(self) -> bool:
        return bool(self.team_id and self.key_id and self.private_key_pem)

    @cached_property
    def private_key(self) -> ec.EllipticCurvePrivateKey:
        try:
            key = serialization.load_pem_private_key(self.private_key_pem.encode("utf-8"), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise ApnsCredentialsError(f"APNS private key is invalid: {e}") from e
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ApnsCredentialsError("APNS private key is not an EC key")
        return key

    def sign_token(self, issued_at: int) -> str:
        header = base64url_encode(json.dumps({"alg": "ES256", "kid": self.key_id}, separators=(",", ":")))
        claims = base64url_encode(json.dumps({"iss": self.team_id, "iat": issued_at}, separators=(",", ":")))
        unsigned = f"{header}.{claims}"

        der_signature = self.private_key.sign(unsigned.encode("ascii"), ec.ECDSA(hashes.SHA256()))
        signature = der_to_jose_signature(der_signature)
        return f"{unsigned}.{base64url_encode(signature)}"


def get_apns_auth_token(
    credentials: ApnsCredentials,
    cache: ApnsTokenCache,
    now: int | None = None,
) -> str:
    """
    Return a provider token, signing a new one when the cache is stale.

    Raises:
        ApnsCredentialsError: If credentials are missing or the key is unusable
    """
    if not credentials.configured:
        raise ApnsCredentialsError("APNS credentials are not fully configured")

    now = int(time.time()) if now is None else now
    if cache.valid_for(credentials.team_id, credentials.key_id, now):
        return cache.token

    token = credentials.sign_token(now)
    cache.token = token
    cache.team_id = credentials.team_id
    cache.key_id = credentials.key_id
    cache.issued_at = now
    cache.expires_at = now + APNS_TOKEN_TTL_SECONDS
    logger.debug(f"Signed new APNs provider token for key {credentials.key_id}")
    return token
