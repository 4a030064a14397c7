from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import NoReturn, Optional, Protocol

from authcore.logging import get_logger
from authcore.service import opaque
from authcore.service.errors import InvalidRefreshToken, NotFound
from authcore.service.passwords import SecretHasher
from authcore.storage.models import PENDING_HASH, RefreshToken, RotationResult

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_refresh_token(
        self,
        user_id: str,
        hashed_secret: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RefreshToken: ...

    def update_refresh_token(self, token_id: str, **fields) -> Optional[RefreshToken]: ...

    def find_refresh_token(
        self, token_id: str, *, with_user: bool = False
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self, token_id: str, *, replaced_by: Optional[str] = None
    ) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


class RefreshTokenManager:
    """Issue, rotate and revoke opaque ``<id>.<secret>`` refresh tokens.

    Only an argon2 hash of the secret is stored. Issuance is two-phase: the
    row is created with :data:`PENDING_HASH` (which never verifies) to obtain
    its id, then the real hash is written. Rotation revokes the presented
    token with a compare-and-set, so two concurrent rotations of the same
    token leave at most one usable successor.
    """

    def __init__(
        self,
        store: TokenStore,
        hasher: SecretHasher,
        *,
        ttl_days: int = 30,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.ttl = timedelta(days=ttl_days)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> str:
        row = self.store.create_refresh_token(
            user_id,
            PENDING_HASH,
            self._now() + self.ttl,
            user_agent=user_agent,
            ip=ip,
        )
        secret = opaque.generate_secret()
        try:
            hashed = await self.hasher.hash_async(secret)
            self.store.update_refresh_token(row.id, hashed_secret=hashed)
        except Exception:
            # never leave a half-issued row that could be mistaken for a live one
            self.store.revoke_refresh_token(row.id)
            raise
        self.logger.info("refresh_token_issued", user_id=user_id, token_id=row.id)
        return opaque.encode(row.id, secret)

    async def rotate(
        self,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RotationResult:
        parsed = opaque.decode(token)
        row = self.store.find_refresh_token(parsed.id, with_user=True)
        if not row or not row.user:
            self._reject("missing", parsed.id)
        if row.revoked_at is not None:
            # a revoked token coming back usually means it leaked
            self.logger.warning(
                "refresh_token_reuse_detected",
                token_id=row.id,
                user_id=row.user_id,
                replaced_by=row.replaced_by_token_id,
            )
            self._reject("revoked", row.id)
        if row.expires_at <= self._now():
            self._reject("expired", row.id)
        if not await self.hasher.verify_async(row.hashed_secret, parsed.secret):
            self._reject("mismatch", row.id)
        if not row.user.is_active:
            self._reject("inactive_user", row.id)

        successor = await self.issue(row.user_id, user_agent=user_agent, ip=ip)
        successor_id = opaque.decode(successor).id
        if not self.store.revoke_refresh_token(row.id, replaced_by=successor_id):
            # lost the race against a concurrent rotation of the same token
            self.store.revoke_refresh_token(successor_id)
            self._reject("superseded", row.id)

        self.logger.info(
            "refresh_token_rotated",
            user_id=row.user_id,
            token_id=row.id,
            replaced_by=successor_id,
        )
        return RotationResult(user_id=row.user_id, refresh_token=successor)

    def _reject(self, reason: str, token_id: str) -> NoReturn:
        self.logger.info("refresh_token_rejected", reason=reason, token_id=token_id)
        raise InvalidRefreshToken(reason=reason)

    async def revoke(self, token: str) -> None:
        """Revoke by id alone; the secret half is not checked.

        Lets a client that lost the secret still kill the session. Revoking an
        already revoked token is a no-op.
        """
        parsed = opaque.decode(token)
        row = self.store.find_refresh_token(parsed.id)
        if not row:
            raise NotFound("Refresh token not found")
        if row.revoked_at is not None:
            return
        if self.store.revoke_refresh_token(row.id):
            self.logger.info("refresh_token_revoked", user_id=row.user_id, token_id=row.id)

    async def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        self.logger.info("refresh_tokens_revoked_all", user_id=user_id, revoked=revoked)
        return revoked
