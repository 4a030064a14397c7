from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import (
    SecretCipher,
    inet_or_none,
    parse_ip_address,
    parse_json_meta,
    safe_row_value,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import AuditLog, RefreshToken, User, normalize_email, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT ARRAY['user'],
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        email_verification_token TEXT,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        last_login_at TIMESTAMPTZ,
        last_login_ip INET,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        hashed_secret TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by_token_id UUID,
        user_agent TEXT,
        ip INET
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_token_user_idx ON auth_refresh_token(user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_audit_log (
        id UUID PRIMARY KEY,
        user_id UUID REFERENCES auth_user(id) ON DELETE SET NULL,
        action TEXT NOT NULL,
        metadata JSONB,
        ip INET,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_audit_log_user_idx ON auth_audit_log(user_id, created_at DESC)",
)

_REQUIRED_TABLES = ("auth_user", "auth_refresh_token", "auth_audit_log")

_PUBLIC_USER_COLUMNS = (
    "id, email, roles, is_active, email_verified, email_verified_at, "
    "password_reset_expires_at, two_factor_enabled, last_login_at, last_login_ip, "
    "meta, created_at, updated_at"
)

_UPDATABLE_USER_COLUMNS = {
    "email",
    "password_hash",
    "roles",
    "is_active",
    "email_verified",
    "email_verified_at",
    "email_verification_token",
    "password_reset_token",
    "password_reset_expires_at",
    "two_factor_enabled",
    "two_factor_secret",
    "last_login_at",
    "last_login_ip",
    "meta",
}
_CONSUMABLE_TOKEN_COLUMNS = {"email_verification_token", "password_reset_token"}
_UPDATABLE_TOKEN_COLUMNS = {"hashed_secret", "revoked_at", "replaced_by_token_id", "expires_at"}


def _as_uuid(value: str) -> Optional[str]:
    """Return the canonical form of ``value`` or None if it is not a UUID."""
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError):
        return None


class PostgresStore:
    """Postgres-backed users, refresh tokens and audit log."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    # -- row mapping --------------------------------------------------------

    def _user_from_row(self, row: Dict[str, Any], include_secrets: bool) -> User:
        user = User(
            id=str(row["id"]),
            email=row["email"],
            roles=list(safe_row_value(row, "roles") or ["user"]),
            is_active=safe_row_value(row, "is_active", True),
            email_verified=safe_row_value(row, "email_verified", False),
            email_verified_at=safe_row_value(row, "email_verified_at"),
            password_reset_expires_at=safe_row_value(row, "password_reset_expires_at"),
            two_factor_enabled=safe_row_value(row, "two_factor_enabled", False),
            last_login_at=safe_row_value(row, "last_login_at"),
            last_login_ip=parse_ip_address(safe_row_value(row, "last_login_ip")),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or utcnow(),
            meta=parse_json_meta(safe_row_value(row, "meta")),
        )
        if include_secrets:
            user.password_hash = safe_row_value(row, "password_hash")
            user.email_verification_token = safe_row_value(row, "email_verification_token")
            user.password_reset_token = safe_row_value(row, "password_reset_token")
            user.two_factor_secret = self._cipher.decrypt(safe_row_value(row, "two_factor_secret"))
        return user

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        replaced_by = safe_row_value(row, "replaced_by_token_id")
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            hashed_secret=row["hashed_secret"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked_at=safe_row_value(row, "revoked_at"),
            replaced_by_token_id=str(replaced_by) if replaced_by else None,
            user_agent=safe_row_value(row, "user_agent"),
            ip=parse_ip_address(safe_row_value(row, "ip")),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditLog:
        user_id = safe_row_value(row, "user_id")
        return AuditLog(
            id=str(row["id"]),
            action=row["action"],
            user_id=str(user_id) if user_id else None,
            metadata=parse_json_meta(safe_row_value(row, "metadata")) or {},
            ip=parse_ip_address(safe_row_value(row, "ip")),
            user_agent=safe_row_value(row, "user_agent"),
            created_at=row["created_at"],
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
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        role_list = list(roles) if roles else ["user"]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_user (id, email, password_hash, roles, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_PUBLIC_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        normalized,
                        password_hash,
                        role_list,
                        is_active,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row, include_secrets=False)

    def get_user(self, user_id: str, *, include_secrets: bool = False) -> Optional[User]:
        key = _as_uuid(user_id)
        if key is None:
            return None
        columns = "*" if include_secrets else _PUBLIC_USER_COLUMNS
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {columns} FROM auth_user WHERE id = %s", (key,)
            ).fetchone()
        return self._user_from_row(row, include_secrets) if row else None

    def get_user_by_email(
        self, email: str, *, include_secrets: bool = False
    ) -> Optional[User]:
        columns = "*" if include_secrets else _PUBLIC_USER_COLUMNS
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {columns} FROM auth_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row, include_secrets) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        key = _as_uuid(user_id)
        if key is None:
            return None
        values = dict(fields)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        if "two_factor_secret" in values:
            values["two_factor_secret"] = self._cipher.encrypt(values["two_factor_secret"])
        if "last_login_ip" in values:
            values["last_login_ip"] = inet_or_none(values["last_login_ip"])
        if "meta" in values:
            values["meta"] = json.dumps(values["meta"]) if values["meta"] is not None else None
        if "roles" in values:
            values["roles"] = list(values["roles"])
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column))
            for column in values
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE auth_user SET {} WHERE id = {} RETURNING {}").format(
            sql.SQL(", ").join(assignments),
            sql.Placeholder("_id"),
            sql.SQL(_PUBLIC_USER_COLUMNS),
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, {**values, "_id": key}).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row, include_secrets=False) if row else None

    def consume_user_token(
        self, user_id: str, token_field: str, expected_hash: str, **fields: Any
    ) -> bool:
        """Clear ``token_field`` and apply ``fields`` if it still holds ``expected_hash``.

        False when the user is missing or another request consumed or replaced
        the token first.
        """
        if token_field not in _CONSUMABLE_TOKEN_COLUMNS:
            raise ValueError(f"not a single-use token column: {token_field}")
        unknown = set(fields) - _UPDATABLE_USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        key = _as_uuid(user_id)
        if key is None:
            return False
        values = {**fields, token_field: None}
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column))
            for column in values
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE auth_user SET {} WHERE id = {} AND {} = {}").format(
            sql.SQL(", ").join(assignments),
            sql.Placeholder("_id"),
            sql.Identifier(token_field),
            sql.Placeholder("_expected"),
        )
        with self._connect() as conn:
            cur = conn.execute(query, {**values, "_id": key, "_expected": expected_hash})
            return cur.rowcount == 1

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
        token_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_refresh_token (id, user_id, hashed_secret, expires_at, user_agent, ip)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token_id, user_id, hashed_secret, expires_at, user_agent, inet_or_none(ip)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for refresh token", {"user_id": user_id})
        return self._token_from_row(row)

    def update_refresh_token(self, token_id: str, **fields: Any) -> Optional[RefreshToken]:
        unknown = set(fields) - _UPDATABLE_TOKEN_COLUMNS
        if unknown:
            raise ValueError(f"unsupported refresh token fields: {sorted(unknown)}")
        key = _as_uuid(token_id)
        if key is None or not fields:
            return None
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(column), sql.Placeholder(column))
            for column in fields
        ]
        query = sql.SQL("UPDATE auth_refresh_token SET {} WHERE id = {} RETURNING *").format(
            sql.SQL(", ").join(assignments), sql.Placeholder("_id")
        )
        with self._connect() as conn:
            row = conn.execute(query, {**fields, "_id": key}).fetchone()
        return self._token_from_row(row) if row else None

    def find_refresh_token(
        self, token_id: str, *, with_user: bool = False
    ) -> Optional[RefreshToken]:
        key = _as_uuid(token_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE id = %s", (key,)
            ).fetchone()
            if not row:
                return None
            token = self._token_from_row(row)
            if with_user:
                user_row = conn.execute(
                    f"SELECT {_PUBLIC_USER_COLUMNS} FROM auth_user WHERE id = %s",
                    (token.user_id,),
                ).fetchone()
                token.user = self._user_from_row(user_row, include_secrets=False) if user_row else None
        return token

    def revoke_refresh_token(
        self, token_id: str, *, replaced_by: Optional[str] = None
    ) -> bool:
        """Compare-and-set revoke; False when the row is missing or already revoked."""
        key = _as_uuid(token_id)
        if key is None:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_refresh_token
                SET revoked_at = now(), replaced_by_token_id = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (replaced_by, key),
            )
            return cur.rowcount == 1

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        key = _as_uuid(user_id)
        if key is None:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_refresh_token SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (key,),
            )
            return cur.rowcount

    def list_refresh_tokens(self, user_id: str, *, active_only: bool = True) -> List[RefreshToken]:
        key = _as_uuid(user_id)
        if key is None:
            return []
        query = "SELECT * FROM auth_refresh_token WHERE user_id = %s"
        if active_only:
            query += " AND revoked_at IS NULL AND expires_at > now()"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (key,)).fetchall()
        return [self._token_from_row(row) for row in rows]

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
        entry_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_audit_log (id, user_id, action, metadata, ip, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry_id,
                    _as_uuid(user_id) if user_id else None,
                    action,
                    json.dumps(metadata or {}),
                    inet_or_none(ip),
                    user_agent,
                ),
            ).fetchone()
        return self._audit_from_row(row)

    def list_audit_logs(
        self, user_id: Optional[str] = None, *, limit: int = 50, offset: int = 0
    ) -> List[AuditLog]:
        params: list[Any] = []
        query = "SELECT * FROM auth_audit_log"
        if user_id is not None:
            key = _as_uuid(user_id)
            if key is None:
                return []
            query += " WHERE user_id = %s"
            params.append(key)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._audit_from_row(row) for row in rows]
