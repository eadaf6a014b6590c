from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.base import CredentialStore
from tenantauth.storage.models import AuditLogEntry, utcnow

logger = get_logger(__name__)

LOGIN_FAILED_ACTION = "user.login_failed"


class AuditLogger:
    """Append-only security event sink.

    Writes are best effort: a failing insert is logged and dropped so the
    caller's primary operation is never aborted by auditing.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def log(
        self,
        action: str,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        status: str = "success",
        error_message: Optional[str] = None,
    ) -> None:
        entry = AuditLogEntry(
            action=action,
            tenant_id=tenant_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            changes=changes,
            metadata=dict(metadata or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            status=status,
            error_message=error_message,
        )
        try:
            self.store.insert_audit_log(entry)
        except Exception as exc:
            logger.error("audit_log_write_failed", action=action, error=str(exc))

    def query_by_tenant(
        self,
        tenant_id: str,
        *,
        limit: int = 100,
        offset: int = 0,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_logs(
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )

    def query_by_user(
        self,
        user_id: str,
        *,
        limit: int = 100,
        offset: int = 0,
        action: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_logs(
            user_id=user_id,
            action=action,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )

    def failed_login_attempts(self, ip_address: str, minutes: int = 15) -> int:
        since = utcnow() - timedelta(minutes=minutes)
        return self.store.count_audit_events(
            LOGIN_FAILED_ACTION, ip_address=ip_address, since=since
        )
