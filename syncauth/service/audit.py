from __future__ import annotations

from datetime import timedelta
from typing import Any, List, Optional, Protocol

from syncauth.logging import get_logger
from syncauth.storage.models import AuditEvent, ClientMeta, utcnow

logger = get_logger(__name__)

# Action tags written to the audit trail
LOGIN_SUCCESS = "login_success"
LOGIN_FAILED = "login_failed"
LOGOUT = "logout"
REFRESH_FAILED = "refresh_failed"
USER_CREATED = "user_created"
USER_CREATION_FAILED = "user_creation_failed"
PASSWORD_CHANGED = "password_changed"
PASSWORD_CHANGE_FAILED = "password_change_failed"
USER_UPDATED = "user_updated"
USER_DEACTIVATED = "user_deactivated"
USER_DELETED = "user_deleted"


class AuditSink(Protocol):
    def append_audit_event(self, event: AuditEvent) -> None: ...

    def prune_audit_events(self, older_than) -> int: ...

    def list_audit_events(
        self, *, limit: int = 100, user_id: Optional[str] = None
    ) -> List[AuditEvent]: ...


class AuditLog:
    """Append-only recorder of authentication events.

    Every event goes to the structured log. When a durable sink is attached the
    event is also persisted there; sink failures are logged and swallowed so
    that auditing never fails the operation being audited.
    """

    def __init__(self, sink: Optional[AuditSink] = None, *, retention_days: int = 90) -> None:
        self.sink = sink
        self.retention_days = retention_days

    @property
    def durable(self) -> bool:
        return self.sink is not None

    def record(
        self,
        action: str,
        success: bool,
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        client: Optional[ClientMeta] = None,
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            action=action,
            success=success,
            user_id=user_id,
            username=username,
            ip_address=client.ip_address if client else None,
            user_agent=client.user_agent if client else None,
            details=details,
        )
        log_fn = logger.info if success else logger.warning
        log_fn(
            "auth_audit",
            action=action,
            success=success,
            user_id=user_id,
            username=username,
            ip_address=event.ip_address,
            **details,
        )
        if self.sink is not None:
            try:
                self.sink.append_audit_event(event)
            except Exception as exc:
                logger.warning(
                    "audit_write_failed",
                    action=action,
                    user_id=user_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return event

    def prune(self) -> int:
        """Drop events older than the retention window; returns rows removed."""
        if self.sink is None:
            return 0
        cutoff = utcnow() - timedelta(days=self.retention_days)
        try:
            removed = self.sink.prune_audit_events(cutoff)
        except Exception as exc:
            logger.warning("audit_prune_failed", error=str(exc))
            return 0
        if removed:
            logger.info("audit_pruned", removed=removed, retention_days=self.retention_days)
        return removed

    def recent(self, *, limit: int = 100, user_id: Optional[str] = None) -> List[AuditEvent]:
        if self.sink is None:
            return []
        return self.sink.list_audit_events(limit=limit, user_id=user_id)
