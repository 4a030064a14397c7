from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Protocol

from redis.exceptions import RedisError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service import audit, otp
from authcore.service.access_tokens import AccessTokenCodec
from authcore.service.account_flows import AccountFlows, Notifier
from authcore.service.errors import (
    AccountLocked,
    DuplicateEmail,
    InvalidCredentials,
    InvalidTwoFactorCode,
    NotFound,
    TwoFactorAlreadyEnabled,
    TwoFactorMisconfigured,
    TwoFactorNotInitialized,
    TwoFactorRequired,
)
from authcore.service.login_attempts import LoginAttemptTracker
from authcore.service.passwords import SecretHasher
from authcore.service.refresh_tokens import RefreshTokenManager, TokenStore
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuditLog,
    LoginResult,
    RotationResult,
    TwoFactorSetup,
    User,
    normalize_email,
)
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str, *, include_secrets: bool = False) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, *, include_secrets: bool = False
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def consume_user_token(
        self, user_id: str, token_field: str, expected_hash: str, **fields
    ) -> bool: ...

    def list_audit_logs(
        self, user_id: Optional[str] = None, *, limit: int = 50, offset: int = 0
    ) -> List[AuditLog]: ...


class AuthStore(UserStore, TokenStore, audit.AuditSink, Protocol):
    """Everything the auth core needs from persistence."""


class AuthService:
    """Login, refresh-token and two-factor handling over a pluggable store.

    Failed logins are tracked per normalized email, in Redis when a cache is
    configured and in the process-local :class:`LoginAttemptTracker`
    otherwise (or when Redis errors).
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        notifier: Notifier,
        *,
        tracker: Optional[LoginAttemptTracker] = None,
        hasher: Optional[SecretHasher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self.hasher = hasher or SecretHasher()
        self.tracker = (
            tracker if tracker is not None else LoginAttemptTracker.from_settings(settings)
        )
        self.access_tokens = AccessTokenCodec(settings)
        self.refresh_tokens = RefreshTokenManager(
            store, self.hasher, ttl_days=settings.refresh_token_ttl_days
        )
        self.flows = AccountFlows(
            store, self.hasher, notifier, settings, self.refresh_tokens
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # -- brute-force tracking ------------------------------------------------

    async def _claim_attempt(self, email: str) -> int:
        """Count this attempt up front; returns seconds left when already locked."""
        max_attempts = self.settings.login_max_attempts
        if self.cache:
            try:
                retry_after, attempts = await self.cache.claim_login_attempt(
                    email,
                    max_attempts=max_attempts,
                    window_seconds=self.settings.login_window_seconds,
                    lockout_seconds=self.settings.login_lockout_seconds,
                )
                if not retry_after and attempts >= max_attempts:
                    self.logger.warning("login_lockout_triggered", attempts=attempts)
                return retry_after
            except RedisError as exc:
                self.logger.warning("login_attempt_cache_failed", error=str(exc))
        retry_after, state = self.tracker.claim_attempt(email)
        if state is not None and state.count >= self.tracker.max_attempts:
            self.logger.warning("login_lockout_triggered", attempts=state.count)
        return retry_after

    async def _clear_failures(self, email: str) -> None:
        if self.cache:
            try:
                await self.cache.clear_login_attempts(email)
            except RedisError as exc:
                self.logger.warning("login_attempt_clear_failed", error=str(exc))
        self.tracker.reset(email)

    # -- login / tokens -----------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        roles: Optional[List[str]] = None,
    ) -> User:
        password_hash = await self.hasher.hash_async(password)
        try:
            user = self.store.create_user(normalize_email(email), password_hash, roles=roles)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmail() from exc
            raise
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self,
        email: str,
        password: str,
        two_factor_code: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> LoginResult:
        key = normalize_email(email)
        # counted before hashing; cleared again once the password verifies
        retry_after = await self._claim_attempt(key)
        if retry_after:
            self.logger.warning("login_locked_out", retry_after=retry_after)
            raise AccountLocked(retry_after=retry_after)

        user = self.store.get_user_by_email(key, include_secrets=True)
        if not user:
            # keep timing close to the wrong-password path
            await self.hasher.burn_async(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentials()
        if not await self.hasher.verify_async(user.password_hash, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        await self._clear_failures(key)
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive_account", user_id=user.id)
            raise InvalidCredentials()

        if user.two_factor_enabled:
            if not two_factor_code:
                raise TwoFactorRequired()
            if not user.two_factor_secret:
                self.logger.error("two_factor_secret_missing", user_id=user.id)
                raise TwoFactorMisconfigured()
            if not self._verify_code(user.two_factor_secret, two_factor_code):
                self.logger.info("login_failed", reason="bad_two_factor_code", user_id=user.id)
                raise InvalidTwoFactorCode()

        try:
            self.store.update_user(user.id, last_login_at=self._now(), last_login_ip=ip)
        except Exception as exc:
            self.logger.warning("last_login_update_failed", user_id=user.id, error=str(exc))
        audit.record_audit_safely(
            self.store, audit.LOGIN, user_id=user.id, ip=ip, user_agent=user_agent
        )

        access_token, expires_at = self.access_tokens.issue(user.id, user.roles)
        refresh_token = await self.refresh_tokens.issue(user.id, user_agent=user_agent, ip=ip)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=user.public_view(),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RotationResult:
        rotation = await self.refresh_tokens.rotate(refresh_token, user_agent=user_agent, ip=ip)
        user = self.store.get_user(rotation.user_id)
        roles = user.roles if user else ["user"]
        rotation.access_token, rotation.expires_at = self.access_tokens.issue(
            rotation.user_id, roles
        )
        return rotation

    async def logout(self, refresh_token: str) -> None:
        await self.refresh_tokens.revoke(refresh_token)

    async def logout_all(
        self, user_id: str, *, ip: Optional[str] = None, user_agent: Optional[str] = None
    ) -> int:
        revoked = await self.refresh_tokens.revoke_all(user_id)
        audit.record_audit_safely(
            self.store,
            audit.LOGOUT_ALL,
            user_id=user_id,
            metadata={"revoked": revoked},
            ip=ip,
            user_agent=user_agent,
        )
        return revoked

    async def authenticate(self, authorization: Optional[str]) -> Optional[User]:
        """Resolve a ``Bearer`` access token to an active user, or None."""
        token = self.access_tokens.extract_bearer(authorization)
        if not token:
            return None
        payload = self.access_tokens.decode(token)
        if not payload:
            return None
        user = self.store.get_user(str(payload.get("sub")))
        if not user or not user.is_active:
            return None
        return user

    # -- password -----------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = self._require_user(user_id, include_secrets=True)
        if not await self.hasher.verify_async(user.password_hash, current_password):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentials("Current password is incorrect")
        password_hash = await self.hasher.hash_async(new_password)
        self.store.update_user(user_id, password_hash=password_hash)
        await self.refresh_tokens.revoke_all(user_id)
        audit.record_audit_safely(
            self.store, audit.PASSWORD_CHANGE, user_id=user_id, ip=ip, user_agent=user_agent
        )

    # -- two-factor ---------------------------------------------------------

    def _verify_code(self, secret: str, code: str) -> bool:
        return otp.verify_totp(
            secret,
            code,
            window=self.settings.otp_window,
            time_step=self.settings.otp_time_step,
            digits=self.settings.otp_digits,
        )

    def _require_user(self, user_id: str, *, include_secrets: bool = False) -> User:
        user = self.store.get_user(user_id, include_secrets=include_secrets)
        if not user:
            raise NotFound("User not found")
        return user

    async def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise TwoFactorAlreadyEnabled()
        secret = otp.random_base32_secret()
        self.store.update_user(user_id, two_factor_secret=secret, two_factor_enabled=False)
        uri = otp.build_otpauth_uri(
            secret,
            user.email,
            self.settings.otp_issuer,
            digits=self.settings.otp_digits,
            time_step=self.settings.otp_time_step,
        )
        self.logger.info("two_factor_setup_started", user_id=user_id)
        return TwoFactorSetup(secret=secret, otpauth_uri=uri)

    async def enable_two_factor(self, user_id: str, code: str) -> None:
        user = self._require_user(user_id, include_secrets=True)
        if not user.two_factor_secret:
            raise TwoFactorNotInitialized()
        if not self._verify_code(user.two_factor_secret, code):
            raise InvalidTwoFactorCode()
        self.store.update_user(user_id, two_factor_enabled=True)
        audit.record_audit_safely(self.store, audit.TWO_FACTOR_ENABLED, user_id=user_id)
        self.logger.info("two_factor_enabled", user_id=user_id)

    async def disable_two_factor(self, user_id: str, code: Optional[str]) -> None:
        user = self._require_user(user_id, include_secrets=True)
        if user.two_factor_enabled:
            if not user.two_factor_secret or not code or not self._verify_code(
                user.two_factor_secret, code
            ):
                raise InvalidTwoFactorCode()
        self.store.update_user(user_id, two_factor_enabled=False, two_factor_secret=None)
        audit.record_audit_safely(self.store, audit.TWO_FACTOR_DISABLED, user_id=user_id)
        self.logger.info("two_factor_disabled", user_id=user_id)

    # -- audit --------------------------------------------------------------

    def list_audit_logs(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> List[AuditLog]:
        return self.store.list_audit_logs(user_id, limit=max(1, min(limit, 200)), offset=max(0, offset))
