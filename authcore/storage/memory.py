from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import fields as dataclass_fields
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuditLog,
    RefreshToken,
    User,
    normalize_email,
    utcnow,
)

_USER_FIELDS = {f.name for f in dataclass_fields(User)}
_CONSUMABLE_TOKEN_FIELDS = {"email_verification_token", "password_reset_token"}
_TOKEN_UPDATABLE = {"hashed_secret", "revoked_at", "replaced_by_token_id", "expires_at"}


class MemoryStore:
    """Thread-safe in-process store for users, refresh tokens and audit rows.

    Every public method takes ``_data_lock``; rows handed out are copies so
    callers cannot mutate stored state. When ``fs_root`` is given the whole
    state is snapshotted to ``<fs_root>/state/auth_store.json`` after each
    write and reloaded on start-up.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.audit_logs: List[AuditLog] = []
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(mfa_encryption_key)
        if self.fs_root is not None:
            self._load_state()

    def _export_user(self, user: User, include_secrets: bool) -> User:
        if not include_secrets:
            return replace(user.without_secrets(), roles=list(user.roles))
        return replace(
            user,
            roles=list(user.roles),
            meta=dict(user.meta) if user.meta else user.meta,
            two_factor_secret=self._cipher.decrypt(user.two_factor_secret),
        )

    # -- users --------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Optional[List[str]] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                roles=list(roles) if roles else ["user"],
                is_active=is_active,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return self._export_user(user, include_secrets=False)

    def get_user(self, user_id: str, *, include_secrets: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export_user(user, include_secrets) if user else None

    def get_user_by_email(
        self, email: str, *, include_secrets: bool = False
    ) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return self._export_user(user, include_secrets)
            return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - (_USER_FIELDS - {"id", "created_at", "updated_at"})
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                if any(
                    other.email == fields["email"] and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "two_factor_secret" in fields:
                fields["two_factor_secret"] = self._cipher.encrypt(fields["two_factor_secret"])
            if "roles" in fields:
                fields["roles"] = list(fields["roles"])
            updated = replace(user, updated_at=utcnow(), **fields)
            self.users[user_id] = updated
            self._persist_state()
            return self._export_user(updated, include_secrets=False)

    def consume_user_token(
        self, user_id: str, token_field: str, expected_hash: str, **fields: Any
    ) -> bool:
        """Clear a single-use token hash and apply ``fields`` if it is still current."""
        if token_field not in _CONSUMABLE_TOKEN_FIELDS:
            raise ValueError(f"not a single-use token field: {token_field}")
        unknown = set(fields) - (_USER_FIELDS - {"id", "created_at", "updated_at"})
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not expected_hash or getattr(user, token_field) != expected_hash:
                return False
            self.users[user_id] = replace(
                user, updated_at=utcnow(), **{**fields, token_field: None}
            )
            self._persist_state()
            return True

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self,
        user_id: str,
        hashed_secret: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for refresh token", {"user_id": user_id})
            token = RefreshToken.new(
                user_id, hashed_secret, expires_at, user_agent=user_agent, ip=ip
            )
            self.refresh_tokens[token.id] = token
            self._persist_state()
            return replace(token)

    def update_refresh_token(self, token_id: str, **fields: Any) -> Optional[RefreshToken]:
        unknown = set(fields) - _TOKEN_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported refresh token fields: {sorted(unknown)}")
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token:
                return None
            updated = replace(token, **fields)
            self.refresh_tokens[token_id] = updated
            self._persist_state()
            return replace(updated)

    def find_refresh_token(
        self, token_id: str, *, with_user: bool = False
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token:
                return None
            found = replace(token)
            if with_user:
                owner = self.users.get(token.user_id)
                found.user = self._export_user(owner, include_secrets=False) if owner else None
            return found

    def revoke_refresh_token(
        self, token_id: str, *, replaced_by: Optional[str] = None
    ) -> bool:
        """Revoke ``token_id`` if still unrevoked; False when someone got there first."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.revoked_at is not None:
                return False
            token.revoked_at = utcnow()
            token.replaced_by_token_id = replaced_by
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_refresh_tokens(self, user_id: str, *, active_only: bool = True) -> List[RefreshToken]:
        with self._data_lock:
            now = utcnow()
            return [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and (not active_only or t.is_active(now))
            ]

    # -- audit --------------------------------------------------------------

    def record_audit(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        with self._data_lock:
            entry = AuditLog(
                id=str(uuid.uuid4()),
                action=action,
                user_id=user_id,
                metadata=dict(metadata) if metadata else {},
                ip=ip,
                user_agent=user_agent,
            )
            self.audit_logs.append(entry)
            self._persist_state()
            return replace(entry)

    def list_audit_logs(
        self, user_id: Optional[str] = None, *, limit: int = 50, offset: int = 0
    ) -> List[AuditLog]:
        with self._data_lock:
            rows = [
                replace(e)
                for e in reversed(self.audit_logs)
                if user_id is None or e.user_id == user_id
            ]
            return rows[offset : offset + limit]

    # -- persistence --------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "roles": list(user.roles),
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "email_verification_token": user.email_verification_token,
            "password_reset_token": user.password_reset_token,
            "password_reset_expires_at": self._serialize_datetime(user.password_reset_expires_at),
            "two_factor_enabled": user.two_factor_enabled,
            # already Fernet-encrypted in memory
            "two_factor_secret": user.two_factor_secret,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data.get("password_hash"),
            roles=data.get("roles") or ["user"],
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            email_verification_token=data.get("email_verification_token"),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=data.get("two_factor_secret"),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "hashed_secret": token.hashed_secret,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "replaced_by_token_id": token.replaced_by_token_id,
            "user_agent": token.user_agent,
            "ip": token.ip,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            hashed_secret=data["hashed_secret"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by_token_id=data.get("replaced_by_token_id"),
            user_agent=data.get("user_agent"),
            ip=data.get("ip"),
        )

    def _serialize_audit(self, entry: AuditLog) -> dict:
        return {
            "id": entry.id,
            "action": entry.action,
            "user_id": entry.user_id,
            "metadata": entry.metadata,
            "ip": entry.ip,
            "user_agent": entry.user_agent,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditLog:
        return AuditLog(
            id=data["id"],
            action=data["action"],
            user_id=data.get("user_id"),
            metadata=data.get("metadata") or {},
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "audit_logs": [self._serialize_audit(e) for e in self.audit_logs],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t) for t in data.get("refresh_tokens", [])
        }
        self.audit_logs = [self._deserialize_audit(e) for e in data.get("audit_logs", [])]
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
