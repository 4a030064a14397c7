from __future__ import annotations

from typing import Optional, Protocol

from authcore.logging import get_logger

logger = get_logger(__name__)

LOGIN = "login"
PASSWORD_CHANGE = "password_change"
PASSWORD_RESET = "password_reset"
EMAIL_VERIFIED = "email_verified"
TWO_FACTOR_ENABLED = "two_factor_enabled"
TWO_FACTOR_DISABLED = "two_factor_disabled"
LOGOUT_ALL = "logout_all"


class AuditSink(Protocol):
    def record_audit(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ): ...


def record_audit_safely(
    sink: AuditSink,
    action: str,
    *,
    user_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> None:
    """Append an audit row; a failing sink is logged and never fails the caller."""
    try:
        sink.record_audit(
            action, user_id=user_id, metadata=metadata, ip=ip, user_agent=user_agent
        )
    except Exception as exc:
        logger.warning("audit_write_failed", action=action, user_id=user_id, error=str(exc))
