from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from typing import Any

from authcore.service.errors import MalformedToken

SEPARATOR = "."


@dataclass(frozen=True)
class OpaqueToken:
    id: str
    secret: str

    def __repr__(self) -> str:
        # never render the secret half
        return f"OpaqueToken(id={self.id!r})"


def encode(token_id: str, secret: str) -> str:
    return f"{token_id}{SEPARATOR}{secret}"


def decode(token: Any) -> OpaqueToken:
    """Split ``<id>.<secret>``; anything else raises :class:`MalformedToken`."""
    if not isinstance(token, str):
        raise MalformedToken()
    parts = token.split(SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedToken()
    return OpaqueToken(id=parts[0], secret=parts[1])


def generate_secret(nbytes: int = 32) -> str:
    """URL-safe base64 without padding; never contains the separator."""
    return base64.urlsafe_b64encode(secrets.token_bytes(nbytes)).decode("ascii").rstrip("=")
