from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ciamflow.logging import get_logger
from ciamflow.service.devices import hash_fingerprint
from ciamflow.service.errors import ErrorKind, TransactionError
from ciamflow.storage.models import AuthContext, AuthOutcome, AuthType, utcnow
from ciamflow.storage.repository import StoreView


@dataclass
class RequestContext:
    """Per-request metadata threaded explicitly through every flow call."""

    correlation_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    app_id: str = "default"
    app_version: Optional[str] = None
    device_fingerprint: Optional[str] = None

    @property
    def fingerprint_hash(self) -> Optional[str]:
        if not self.device_fingerprint:
            return None
        return hash_fingerprint(self.device_fingerprint)


class FlowContextStore:
    """Owns the one-per-login-attempt :class:`AuthContext`."""

    def __init__(self, *, ttl_minutes: int = 15) -> None:
        self.ttl_minutes = ttl_minutes
        self.logger = get_logger(__name__)

    def open(
        self,
        tx: StoreView,
        request: RequestContext,
        *,
        cupid: str,
        guid: Optional[str] = None,
        username: Optional[str] = None,
        auth_type: AuthType = AuthType.INITIAL,
        claims: Optional[Dict[str, Any]] = None,
    ) -> AuthContext:
        context = AuthContext.new(
            request.app_id,
            ttl_minutes=self.ttl_minutes,
            cupid=cupid,
            guid=guid,
            username=username,
            app_version=request.app_version,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            device_fingerprint=request.fingerprint_hash,
            correlation_id=request.correlation_id,
            auth_type=auth_type,
            claims=dict(claims or {}),
        )
        tx.contexts.create(context)
        self.logger.info(
            "auth_context_opened",
            context_id=context.context_id,
            cupid=cupid,
            app_id=context.app_id,
        )
        return context

    def load(
        self, tx: StoreView, context_id: str, *, now: Optional[datetime] = None
    ) -> AuthContext:
        """Return a live context or raise the transaction error describing why not."""

        context = tx.contexts.find_by_id(context_id)
        if context is None:
            raise TransactionError(ErrorKind.TRANSACTION_NOT_FOUND)
        if context.is_completed:
            raise TransactionError(ErrorKind.TRANSACTION_CONSUMED)
        now = now or utcnow()
        if context.auth_outcome is AuthOutcome.EXPIRED:
            raise TransactionError(ErrorKind.TRANSACTION_EXPIRED)
        if now >= context.expires_at:
            tx.contexts.update_by_id(
                context_id,
                auth_outcome=AuthOutcome.EXPIRED,
                requires_additional_steps=False,
            )
            self.logger.info("auth_context_expired", context_id=context_id)
            raise TransactionError(ErrorKind.TRANSACTION_EXPIRED)
        return context

    def complete(
        self,
        tx: StoreView,
        context: AuthContext,
        outcome: AuthOutcome,
        *,
        session_id: Optional[str] = None,
    ) -> AuthContext:
        updated = tx.contexts.update_by_id(
            context.context_id,
            auth_outcome=outcome,
            completed_at=utcnow(),
            requires_additional_steps=False,
            session_id=session_id,
        )
        self.logger.info(
            "auth_context_completed",
            context_id=context.context_id,
            outcome=outcome.value,
            session_id=session_id,
        )
        return updated or context

    def expire_stale(self, tx: StoreView, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stale = [
            context
            for context in tx.contexts.find_older_than(
                "expires_at", now, completed_at=None
            )
            if context.auth_outcome is None
        ]
        for context in stale:
            tx.contexts.update_by_id(
                context.context_id,
                auth_outcome=AuthOutcome.EXPIRED,
                requires_additional_steps=False,
            )
        return len(stale)


__all__ = ["FlowContextStore", "RequestContext"]
