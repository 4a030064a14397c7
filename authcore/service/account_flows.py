from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service import audit, opaque
from authcore.service.errors import (
    InternalError,
    InvalidOrExpiredToken,
    InvalidToken,
    NotFound,
)
from authcore.service.passwords import SecretHasher
from authcore.service.refresh_tokens import RefreshTokenManager
from authcore.storage.models import FlowResult, User, normalize_email

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...


class AccountFlows:
    """Single-use email verification and password reset tokens.

    Both tokens are ``<user_id>.<secret>``; only an argon2 hash of the secret
    is kept on the user row and issuing a new token overwrites the old one.
    Tokens are echoed back in :class:`FlowResult` outside production so local
    clients can complete the flow without a mailbox.
    """

    def __init__(
        self,
        store,
        hasher: SecretHasher,
        notifier: Notifier,
        settings: Settings,
        refresh_tokens: RefreshTokenManager,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.notifier = notifier
        self.settings = settings
        self.refresh_tokens = refresh_tokens
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _echo(self, token: str) -> Optional[str]:
        return None if self.settings.production else token

    async def _notify(self, method: str, user: User, token: str) -> None:
        sent = await asyncio.to_thread(getattr(self.notifier, method), user.email, token)
        if not sent:
            self.logger.error("notification_failed", kind=method, user_id=user.id)
            raise InternalError("Unable to deliver email, try again later")

    async def send_email_verification(self, user_id: str) -> FlowResult:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound("User not found")
        if user.email_verified:
            return FlowResult(ok=True, already_verified=True)
        secret = opaque.generate_secret()
        hashed = await self.hasher.hash_async(secret)
        self.store.update_user(user.id, email_verification_token=hashed)
        token = opaque.encode(user.id, secret)
        await self._notify("send_email_verification", user, token)
        self.logger.info("email_verification_requested", user_id=user.id)
        return FlowResult(ok=True, token=self._echo(token))

    async def verify_email(self, token: str) -> FlowResult:
        parsed = opaque.decode(token)
        user = self.store.get_user(parsed.id, include_secrets=True)
        if not user or not user.email_verification_token:
            self.logger.warning("email_verification_invalid_token", reason="no_pending_token")
            raise InvalidToken()
        if not await self.hasher.verify_async(user.email_verification_token, parsed.secret):
            self.logger.warning("email_verification_invalid_token", reason="mismatch")
            raise InvalidToken()
        consumed = self.store.consume_user_token(
            user.id,
            "email_verification_token",
            user.email_verification_token,
            email_verified=True,
            email_verified_at=self._now(),
        )
        if not consumed:
            self.logger.warning("email_verification_invalid_token", reason="already_consumed")
            raise InvalidToken()
        audit.record_audit_safely(self.store, audit.EMAIL_VERIFIED, user_id=user.id)
        self.logger.info("email_verified", user_id=user.id)
        return FlowResult(ok=True)

    async def request_password_reset(self, email: str) -> FlowResult:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            # same answer as for a real account
            self.logger.info("password_reset_unknown_email")
            return FlowResult(ok=True)
        secret = opaque.generate_secret()
        hashed = await self.hasher.hash_async(secret)
        self.store.update_user(
            user.id,
            password_reset_token=hashed,
            password_reset_expires_at=self._now()
            + timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        token = opaque.encode(user.id, secret)
        await self._notify("send_password_reset", user, token)
        self.logger.info("password_reset_requested", user_id=user.id)
        return FlowResult(ok=True, token=self._echo(token))

    async def reset_password(self, token: str, new_password: str) -> FlowResult:
        parsed = opaque.decode(token)
        user = self.store.get_user(parsed.id, include_secrets=True)
        if not user:
            raise InvalidToken()
        expires_at = user.password_reset_expires_at
        if not user.password_reset_token or not expires_at or expires_at < self._now():
            self.logger.warning("password_reset_invalid_token", user_id=user.id, reason="expired")
            raise InvalidOrExpiredToken()
        if not await self.hasher.verify_async(user.password_reset_token, parsed.secret):
            self.logger.warning("password_reset_invalid_token", user_id=user.id, reason="mismatch")
            raise InvalidToken()
        password_hash = await self.hasher.hash_async(new_password)
        consumed = self.store.consume_user_token(
            user.id,
            "password_reset_token",
            user.password_reset_token,
            password_hash=password_hash,
            password_reset_expires_at=None,
        )
        if not consumed:
            self.logger.warning(
                "password_reset_invalid_token", user_id=user.id, reason="already_consumed"
            )
            raise InvalidToken()
        await self.refresh_tokens.revoke_all(user.id)
        audit.record_audit_safely(self.store, audit.PASSWORD_RESET, user_id=user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return FlowResult(ok=True)
