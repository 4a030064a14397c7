from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and opaque token secrets.

    The async variants push the CPU-bound work onto a worker thread so the
    event loop keeps serving other requests.
    """

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified when a login targets an unknown email so the response time
        # does not reveal whether the account exists.
        self._dummy_hash = self._hasher.hash("authcore-timing-equalizer")

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, hashed: Optional[str], secret: str) -> bool:
        if not hashed or secret is None:
            return False
        try:
            return self._hasher.verify(hashed, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable", algo=self.algorithm)
            return False

    def burn(self, secret: str) -> None:
        """Spend the same time as a real verification and discard the result."""
        self.verify(self._dummy_hash, secret or "")

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, hashed: Optional[str], secret: str) -> bool:
        return await asyncio.to_thread(self.verify, hashed, secret)

    async def burn_async(self, secret: str) -> None:
        await asyncio.to_thread(self.burn, secret)
