"""Transaction ledger: single pending step, one-time ids, lazy expiry."""

from datetime import timedelta

import pytest

from ciamflow.service.errors import ErrorKind, TransactionError
from ciamflow.service.ledger import TransactionLedger
from ciamflow.storage.errors import ConstraintViolation
from ciamflow.storage.memory import MemoryStore
from ciamflow.storage.models import (
    AuthContext,
    TransactionPhase,
    TransactionStatus,
    utcnow,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def ledger():
    return TransactionLedger(ttl_seconds={TransactionPhase.MFA: 60})


@pytest.fixture
def context(store):
    context = AuthContext.new("web", cupid="user-mfauser")
    store.contexts.create(context)
    return context


def _pending(store, context_id):
    return [
        t
        for t in store.transactions.find_by("context_id", context_id)
        if t.status is TransactionStatus.PENDING
    ]


class TestSinglePending:
    def test_create_next_refuses_second_pending(self, store, ledger, context):
        ledger.create_next(store, context.context_id, TransactionPhase.MFA)

        with pytest.raises(ConstraintViolation):
            ledger.create_next(store, context.context_id, TransactionPhase.ESIGN)

    def test_advance_expires_previous_and_numbers_sequentially(self, store, ledger, context):
        first = ledger.create_next(store, context.context_id, TransactionPhase.MFA)
        second = ledger.advance(
            store,
            context.context_id,
            TransactionPhase.ESIGN,
            parent_transaction_id=first.transaction_id,
        )

        assert [t.transaction_id for t in _pending(store, context.context_id)] == [
            second.transaction_id
        ]
        assert store.transactions.find_by_id(first.transaction_id).status is TransactionStatus.EXPIRED
        assert second.sequence_number == first.sequence_number + 1
        assert second.parent_transaction_id == first.transaction_id
        assert second.transaction_id.startswith("txn_")

    def test_expire_all_pending(self, store, ledger, context):
        ledger.create_next(store, context.context_id, TransactionPhase.MFA)

        assert ledger.expire_all_pending(store, context.context_id) == 1
        assert _pending(store, context.context_id) == []


class TestRead:
    def test_foreign_context_looks_unknown(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)
        other = AuthContext.new("web", cupid="user-other")
        store.contexts.create(other)

        with pytest.raises(TransactionError) as exc_info:
            ledger.read(store, transaction.transaction_id, other.context_id)
        assert exc_info.value.kind is ErrorKind.TRANSACTION_NOT_FOUND

    def test_wrong_phase_looks_unknown(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)

        with pytest.raises(TransactionError) as exc_info:
            ledger.read(
                store, transaction.transaction_id, context.context_id, phase=TransactionPhase.ESIGN
            )
        assert exc_info.value.kind is ErrorKind.TRANSACTION_NOT_FOUND

    def test_lazy_expiry_is_persisted(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)
        later = utcnow() + timedelta(seconds=61)

        read = ledger.read(store, transaction.transaction_id, context.context_id, now=later)

        assert read.status is TransactionStatus.EXPIRED
        assert store.transactions.find_by_id(transaction.transaction_id).status is TransactionStatus.EXPIRED
        with pytest.raises(TransactionError) as exc_info:
            ledger.require_pending(read)
        assert exc_info.value.kind is ErrorKind.TRANSACTION_EXPIRED


class TestOneTimeUse:
    def test_consume_twice_fails(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)
        ledger.consume(store, transaction.transaction_id, context.context_id)

        with pytest.raises(TransactionError) as exc_info:
            ledger.consume(store, transaction.transaction_id, context.context_id)
        assert exc_info.value.kind is ErrorKind.TRANSACTION_CONSUMED

    def test_decision_requires_pending(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)
        decided = ledger.record_decision(store, transaction, TransactionStatus.APPROVED)

        with pytest.raises(TransactionError):
            ledger.record_decision(store, decided, TransactionStatus.REJECTED)

    def test_decision_status_must_be_a_decision(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)

        with pytest.raises(ValueError):
            ledger.record_decision(store, transaction, TransactionStatus.CONSUMED)


class TestSweep:
    def test_sweep_expires_stale_pending_only(self, store, ledger, context):
        transaction = ledger.create_next(store, context.context_id, TransactionPhase.MFA)

        assert ledger.sweep_expired(store, utcnow()) == 0
        assert ledger.sweep_expired(store, utcnow() + timedelta(minutes=5)) == 1
        assert store.transactions.find_by_id(transaction.transaction_id).status is TransactionStatus.EXPIRED
