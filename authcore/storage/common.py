"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import ipaddress
import json
import os
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet encryption for two-factor secrets at rest.

    The key is derived from ``MFA_SECRET_KEY`` (or the JWT secret) so both
    backends can read rows written by the other. Without any key material an
    ephemeral key is generated and a warning logged.
    """

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            logger.warning("mfa_cipher_ephemeral_key")
            self._fernet = Fernet(Fernet.generate_key())
        else:
            self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        """Return the plaintext, or None when the ciphertext is unreadable.

        An unreadable secret surfaces to login as a misconfigured second factor.
        """
        if stored is None:
            return None
        try:
            return self._fernet.decrypt(stored.encode()).decode()
        except InvalidToken:
            logger.error("mfa_secret_decrypt_failed")
            return None


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an INET column value (or raw string) to text."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    return text or None


def inet_or_none(raw_ip: Any) -> Optional[str]:
    """Value for an INET column: the address as text, or None when it is not one.

    Client addresses come from proxies and test clients ("testclient") as free
    text; anything unparseable is stored as NULL instead of failing the write.
    """
    text = parse_ip_address(raw_ip)
    if text is None:
        return None
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        logger.debug("ip_address_unparseable", length=len(text))
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
