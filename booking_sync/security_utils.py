"""
Security utilities: secret encryption at rest, masking and security audit logging
"""

import base64
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import SECRET_KEY

logger = logging.getLogger(__name__)


def get_cipher_suite(secret_key: Optional[str] = None) -> Fernet:
    """Fernet cipher keyed from SECRET_KEY (any length; hashed to 32 bytes)"""
    key_material = hashlib.sha256((secret_key or SECRET_KEY).encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(key_material))


def encrypt_secret(value: str, secret_key: Optional[str] = None) -> str:
    return get_cipher_suite(secret_key).encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str, secret_key: Optional[str] = None) -> str:
    try:
        return get_cipher_suite(secret_key).decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("❌ Failed to decrypt stored secret - SECRET_KEY may have changed")
        raise


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked string
    """
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]


def log_security_event(
    event_type: str,
    ip_address: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
):
    """
    Log security-related events for audit trail

    Args:
        event_type: Type of security event (webhook_signature_invalid, ...)
        ip_address: Client IP address
        details: Additional event details
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "ip_address": ip_address,
        "details": details or {},
    }

    logger.warning(f"SECURITY_EVENT: {log_entry}")
