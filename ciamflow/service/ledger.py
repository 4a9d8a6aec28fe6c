from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from ciamflow.config import Settings
from ciamflow.logging import get_logger
from ciamflow.service.errors import ErrorKind, TransactionError
from ciamflow.storage.errors import ConstraintViolation
from ciamflow.storage.models import (
    AuthTransaction,
    TransactionPhase,
    TransactionStatus,
    utcnow,
)
from ciamflow.storage.repository import StoreView

_DEFAULT_TTLS = {
    TransactionPhase.MFA: 300,
    TransactionPhase.ESIGN: 600,
    TransactionPhase.DEVICE_BIND: 300,
}


class TransactionLedger:
    """Sole owner of :class:`AuthTransaction` state transitions.

    Every step of a flow gets its own single-use transaction id. A context has
    at most one PENDING transaction; moving to the next step expires whatever
    is still pending and mints a fresh id in the same unit of work, so an old
    id can never re-enter the flow at an earlier step.

    Expiry is evaluated lazily: a PENDING row past ``expires_at`` is persisted
    as EXPIRED the moment it is read. :meth:`sweep_expired` only tidies rows
    nobody reads again.
    """

    def __init__(self, *, ttl_seconds: Optional[Dict[TransactionPhase, int]] = None) -> None:
        self.ttl_seconds = {**_DEFAULT_TTLS, **(ttl_seconds or {})}
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransactionLedger":
        return cls(
            ttl_seconds={
                TransactionPhase.MFA: settings.mfa_transaction_ttl_seconds,
                TransactionPhase.ESIGN: settings.esign_transaction_ttl_seconds,
                TransactionPhase.DEVICE_BIND: settings.device_bind_transaction_ttl_seconds,
            }
        )

    def expire_all_pending(self, tx: StoreView, context_id: str) -> int:
        count = tx.transactions.update_by_filter(
            {"context_id": context_id, "status": TransactionStatus.PENDING},
            status=TransactionStatus.EXPIRED,
        )
        if count:
            self.logger.debug("transactions_expired", context_id=context_id, count=count)
        return count

    def create_next(
        self,
        tx: StoreView,
        context_id: str,
        phase: TransactionPhase,
        *,
        parent_transaction_id: Optional[str] = None,
        **payload: Any,
    ) -> AuthTransaction:
        existing = tx.transactions.find_by("context_id", context_id)
        if any(t.status is TransactionStatus.PENDING for t in existing):
            raise ConstraintViolation(
                "context already has a pending transaction",
                {"context_id": context_id},
            )
        sequence_number = max((t.sequence_number for t in existing), default=0) + 1
        transaction = AuthTransaction.new(
            context_id,
            phase,
            sequence_number,
            ttl_seconds=self.ttl_seconds[phase],
            parent_transaction_id=parent_transaction_id,
            **payload,
        )
        tx.transactions.create(transaction)
        self.logger.info(
            "transaction_created",
            context_id=context_id,
            transaction_id=transaction.transaction_id,
            phase=phase.value,
            sequence_number=sequence_number,
        )
        return transaction

    def advance(
        self,
        tx: StoreView,
        context_id: str,
        phase: TransactionPhase,
        *,
        parent_transaction_id: Optional[str] = None,
        **payload: Any,
    ) -> AuthTransaction:
        self.expire_all_pending(tx, context_id)
        return self.create_next(
            tx,
            context_id,
            phase,
            parent_transaction_id=parent_transaction_id,
            **payload,
        )

    def read(
        self,
        tx: StoreView,
        transaction_id: str,
        context_id: str,
        *,
        phase: Optional[TransactionPhase] = None,
        now: Optional[datetime] = None,
    ) -> AuthTransaction:
        """Load a transaction of ``context_id``, persisting lazy expiry."""

        transaction = tx.transactions.find_by_id(transaction_id)
        # A foreign context or phase is indistinguishable from an unknown id
        if (
            transaction is None
            or transaction.context_id != context_id
            or (phase is not None and transaction.phase is not phase)
        ):
            raise TransactionError(ErrorKind.TRANSACTION_NOT_FOUND)
        if transaction.status is TransactionStatus.PENDING and transaction.is_expired(now):
            transaction = tx.transactions.update_by_id(
                transaction_id, status=TransactionStatus.EXPIRED
            ) or transaction
            self.logger.info(
                "transaction_expired",
                context_id=context_id,
                transaction_id=transaction_id,
            )
        return transaction

    @staticmethod
    def require_pending(transaction: AuthTransaction) -> AuthTransaction:
        if transaction.status is TransactionStatus.EXPIRED:
            raise TransactionError(ErrorKind.TRANSACTION_EXPIRED)
        if transaction.status is not TransactionStatus.PENDING:
            raise TransactionError(ErrorKind.TRANSACTION_CONSUMED)
        return transaction

    def consume(
        self,
        tx: StoreView,
        transaction_id: str,
        context_id: str,
        *,
        phase: Optional[TransactionPhase] = None,
        now: Optional[datetime] = None,
    ) -> AuthTransaction:
        """Take a PENDING transaction for its one and only decision."""

        transaction = self.require_pending(
            self.read(tx, transaction_id, context_id, phase=phase, now=now)
        )
        return self.mark_consumed(tx, transaction)

    def record_decision(
        self,
        tx: StoreView,
        transaction: AuthTransaction,
        status: TransactionStatus,
        **fields: Any,
    ) -> AuthTransaction:
        if status not in (TransactionStatus.APPROVED, TransactionStatus.REJECTED):
            raise ValueError(f"not a decision status: {status}")
        self.require_pending(transaction)
        updated = tx.transactions.update_by_id(
            transaction.transaction_id, status=status, **fields
        )
        self.logger.info(
            "transaction_decided",
            transaction_id=transaction.transaction_id,
            status=status.value,
        )
        return updated or transaction

    def record_attempt(
        self, tx: StoreView, transaction: AuthTransaction, **fields: Any
    ) -> AuthTransaction:
        """Bump the attempt counter of a transaction that stays PENDING."""

        updated = tx.transactions.update_by_id(
            transaction.transaction_id,
            attempt_number=transaction.attempt_number + 1,
            **fields,
        )
        return updated or transaction

    def mark_consumed(self, tx: StoreView, transaction: AuthTransaction) -> AuthTransaction:
        updated = tx.transactions.update_by_id(
            transaction.transaction_id,
            status=TransactionStatus.CONSUMED,
            consumed_at=utcnow(),
        )
        return updated or transaction

    def sweep_expired(self, tx: StoreView, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stale = tx.transactions.find_older_than(
            "expires_at", now, status=TransactionStatus.PENDING
        )
        for transaction in stale:
            tx.transactions.update_by_id(
                transaction.transaction_id, status=TransactionStatus.EXPIRED
            )
        return len(stale)


__all__ = ["TransactionLedger"]
