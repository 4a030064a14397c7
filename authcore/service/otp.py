"""Time-based one-time passwords (RFC 6238, HMAC-SHA1).

Secrets are exchanged as base32 strings so authenticator apps can import them
from the ``otpauth://`` URI produced by :func:`build_otpauth_uri`.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

_BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_BASE32_INDEX = {char: idx for idx, char in enumerate(_BASE32_ALPHABET)}

DEFAULT_TIME_STEP = 30
DEFAULT_DIGITS = 6


def base32_decode(secret: str) -> bytes:
    """Lenient base32 decoding.

    Upper-cases, strips trailing ``=`` and skips characters outside the
    alphabet (authenticator apps display secrets with spaces). A trailing
    group of fewer than eight bits is discarded. Never raises.
    """
    cleaned = (secret or "").rstrip("=").upper()
    buffer = 0
    bits = 0
    out = bytearray()
    for char in cleaned:
        value = _BASE32_INDEX.get(char)
        if value is None:
            continue
        buffer = (buffer << 5) | value
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((buffer >> bits) & 0xFF)
    return bytes(out)


def base32_encode(data: bytes) -> str:
    """Encode bytes as base32 padded with ``=`` to a multiple of eight."""
    buffer = 0
    bits = 0
    chars: list[str] = []
    for byte in data:
        buffer = (buffer << 8) | byte
        bits += 8
        while bits >= 5:
            bits -= 5
            chars.append(_BASE32_ALPHABET[(buffer >> bits) & 0x1F])
    # partial trailing chunk is dropped
    encoded = "".join(chars)
    return encoded + "=" * ((8 - len(encoded) % 8) % 8)


def random_base32_secret(size: int = 20) -> str:
    return base32_encode(secrets.token_bytes(size))


def _hotp(key: bytes, counter: int, digits: int) -> str:
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def generate_totp(
    secret: str,
    time_step: int = DEFAULT_TIME_STEP,
    digits: int = DEFAULT_DIGITS,
    at: Optional[float] = None,
) -> str:
    """Return the code for ``secret`` at unix time ``at`` (defaults to now)."""
    timestamp = time.time() if at is None else at
    counter = int(timestamp // time_step)
    return _hotp(base32_decode(secret), counter, digits)


def verify_totp(
    secret: str,
    code: str,
    window: int = 1,
    time_step: int = DEFAULT_TIME_STEP,
    digits: int = DEFAULT_DIGITS,
    at: Optional[float] = None,
) -> bool:
    """Check ``code`` against the steps ``-window..+window`` around ``at``.

    Every candidate is compared in constant time; a code of the wrong shape
    simply never matches.
    """
    if not isinstance(code, str) or not code:
        return False
    candidate = code.strip()
    timestamp = time.time() if at is None else at
    key = base32_decode(secret)
    base_counter = int(timestamp // time_step)
    matched = False
    for offset in range(-window, window + 1):
        expected = _hotp(key, base_counter + offset, digits)
        # SECURITY: constant-time comparison, no early exit
        if hmac.compare_digest(expected.encode(), candidate.encode()):
            matched = True
    return matched


def build_otpauth_uri(
    secret: str,
    account: str,
    issuer: str,
    *,
    digits: int = DEFAULT_DIGITS,
    time_step: int = DEFAULT_TIME_STEP,
) -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode(
        {
            "secret": secret.rstrip("="),
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": digits,
            "period": time_step,
        }
    )
    return f"otpauth://totp/{label}?{params}"


__all__ = [
    "base32_decode",
    "base32_encode",
    "random_base32_secret",
    "generate_totp",
    "verify_totp",
    "build_otpauth_uri",
]
