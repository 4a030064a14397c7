from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Stored in place of a refresh token hash between the two phases of issuance.
# It is not a valid argon2 encoding, so verification against it always fails.
PENDING_HASH = "pending"

# Columns that are only loaded when a caller asks for secrets.
SECRET_USER_FIELDS = (
    "password_hash",
    "email_verification_token",
    "password_reset_token",
    "two_factor_secret",
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: ["user"])
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    def without_secrets(self) -> "User":
        return replace(self, **{name: None for name in SECRET_USER_FIELDS})

    def public_view(self) -> dict:
        """Sanitized representation safe to hand back to API clients."""
        return {
            "id": self.id,
            "email": self.email,
            "roles": list(self.roles),
            "is_active": self.is_active,
            "email_verified": self.email_verified,
            "email_verified_at": self.email_verified_at.isoformat() if self.email_verified_at else None,
            "two_factor_enabled": self.two_factor_enabled,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RefreshToken:
    id: str
    user_id: str
    hashed_secret: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by_token_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    # Populated by find_refresh_token(..., with_user=True)
    user: Optional[User] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        hashed_secret: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip: str | None = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            hashed_secret=hashed_secret,
            expires_at=expires_at,
            user_agent=user_agent,
            ip=ip,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and self.expires_at > now


@dataclass
class AuditLog:
    id: str
    action: str
    user_id: Optional[str] = None
    metadata: Dict | None = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginResult:
    user: dict
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None


@dataclass
class RotationResult:
    user_id: str
    refresh_token: str
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class FlowResult:
    ok: bool = True
    token: Optional[str] = None
    already_verified: bool = False


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
