"""
Webhook Security Module

Signature verification for inbound webhooks, independent of the web framework so
the ingestion service can verify the exact raw bytes it was handed.

- Calendly: header ``Calendly-Webhook-Signature: t=<unix ts>,v1=<hex>`` where the
  digest is HMAC-SHA256 over ``"<ts>.<raw body>"``
- Standard Webhooks (Dodo Payments): ``webhook-signature: v1,<base64>`` over
  ``"<webhook-id>.<webhook-timestamp>.<raw body>"`` with a ``whsec_`` key
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from collections.abc import Iterable
from typing import Optional

from .errors import SignatureInvalid

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def extract_svix_signing_key(secret: str) -> bytes:
    """
    Extract Standard Webhooks signing key bytes from a whsec_ style secret.

    - Incoming secret typically looks like: "whsec_BASE64KEY"
    - The HMAC key must be the BASE64-decoded bytes of the part after "whsec_"
    - If not prefixed or not valid base64, fall back to UTF-8 bytes
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:], validate=True)
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def verify_timestamp(
    timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[float] = None
) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    current_time = int(now if now is not None else time.time())
    age = abs(current_time - webhook_time)
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def parse_calendly_signature_header(signature_header: str) -> tuple[Optional[str], list[str]]:
    """Split "t=...,v1=...[,v1=...]" into (timestamp, [signatures])"""
    timestamp = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_calendly_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secrets: Iterable[str],
    tolerance_seconds: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Verify a Calendly webhook signature against every accepted secret.

    Raises:
        SignatureInvalid: missing header, stale timestamp or no matching digest
    """
    if not signature_header:
        raise SignatureInvalid("Missing webhook signature")

    timestamp, signatures = parse_calendly_signature_header(signature_header)
    if not timestamp or not signatures:
        raise SignatureInvalid("Invalid signature format")

    if not verify_timestamp(timestamp, tolerance_seconds, now=now):
        raise SignatureInvalid("Webhook timestamp outside tolerance")

    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    secrets = [s for s in secrets if s]
    if not secrets:
        raise SignatureInvalid("No webhook signing secret configured")

    for secret in secrets:
        expected = compute_hmac_sha256(secret, signed_payload)
        if any(constant_time_compare(expected, candidate) for candidate in signatures):
            return

    raise SignatureInvalid("Invalid webhook signature")


def create_calendly_signature(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Create a Calendly-format signature header (tests, local replays)"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = compute_hmac_sha256(secret, f"{timestamp}.".encode("utf-8") + payload)
    return f"t={timestamp},v1={digest}"


def verify_standard_webhook(
    raw_body: bytes,
    webhook_id: Optional[str],
    timestamp: Optional[str],
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Verify a Standard Webhooks signature (used by Dodo Payments).

    The signature header may carry several space separated "v1,<sig>" entries.
    """
    if not webhook_id or not timestamp or not signature_header:
        raise SignatureInvalid("Missing webhook signature headers")

    if not verify_timestamp(timestamp, tolerance_seconds, now=now):
        raise SignatureInvalid("Webhook timestamp outside tolerance")

    signing_key = extract_svix_signing_key(secret)
    signed_message = b".".join([webhook_id.encode("utf-8"), timestamp.encode("utf-8"), raw_body])
    expected = base64.b64encode(hmac.new(signing_key, signed_message, hashlib.sha256).digest()).decode(
        "utf-8"
    )

    for entry in signature_header.split():
        version, _, received = entry.partition(",")
        if version == "v1" and constant_time_compare(expected, received):
            return

    raise SignatureInvalid("Invalid webhook signature")


def create_standard_webhook_signature(
    secret: str, webhook_id: str, payload: bytes, timestamp: Optional[int] = None
) -> tuple[str, str]:
    """Return (timestamp, "v1,<base64>") for a Standard Webhooks delivery"""
    timestamp_str = str(int(time.time()) if timestamp is None else timestamp)
    signing_key = extract_svix_signing_key(secret)
    signed_message = b".".join([webhook_id.encode("utf-8"), timestamp_str.encode("utf-8"), payload])
    signature = base64.b64encode(hmac.new(signing_key, signed_message, hashlib.sha256).digest()).decode(
        "utf-8"
    )
    return timestamp_str, f"v1,{signature}"
