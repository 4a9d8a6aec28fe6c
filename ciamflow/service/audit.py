from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from ciamflow.logging import get_correlation_id, get_logger
from ciamflow.storage.models import AuditLog, utcnow
from ciamflow.storage.repository import StoreView


class AuditRecorder:
    """Append-only audit trail written inside the caller's unit of work."""

    def __init__(self, *, retention_days: int = 90) -> None:
        self.retention_days = retention_days
        self.logger = get_logger(__name__)

    def record(
        self,
        tx: StoreView,
        event_type: str,
        category: str,
        *,
        severity: str = "INFO",
        cupid: Optional[str] = None,
        context_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **event_data: Any,
    ) -> AuditLog:
        entry = AuditLog(
            audit_id=str(uuid.uuid4()),
            event_type=event_type,
            event_category=category,
            created_at=utcnow(),
            severity=severity,
            cupid=cupid,
            context_id=context_id,
            transaction_id=transaction_id,
            session_id=session_id,
            correlation_id=correlation_id or get_correlation_id(),
            ip_address=ip_address,
            event_data=dict(event_data),
        )
        tx.audit_logs.create(entry)
        return entry

    def purge_older_than(self, tx: StoreView, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=self.retention_days)
        removed = tx.audit_logs.delete_older_than("created_at", cutoff)
        if removed:
            self.logger.info("audit_retention_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed


__all__ = ["AuditRecorder"]
