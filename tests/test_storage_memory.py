"""Tests for the in-memory store: constraints, rollback and persistence."""

from datetime import timedelta

import pytest

from ciamflow.storage.errors import ConstraintViolation
from ciamflow.storage.memory import MemoryStore
from ciamflow.storage.models import (
    AuthContext,
    AuthTransaction,
    DeviceStatus,
    TransactionPhase,
    TransactionStatus,
    TrustedDevice,
    utcnow,
)


def _context(store: MemoryStore, **attrs) -> AuthContext:
    context = AuthContext.new("web", cupid="user-1", **attrs)
    store.contexts.create(context)
    return context


def _transaction(context_id: str, seq: int = 1, **attrs) -> AuthTransaction:
    return AuthTransaction.new(
        context_id, TransactionPhase.MFA, seq, ttl_seconds=300, **attrs
    )


def _device(cupid: str = "user-1", fingerprint_hash: str = "hash-1") -> TrustedDevice:
    now = utcnow()
    return TrustedDevice(
        device_id=f"dev-{fingerprint_hash}-{now.timestamp()}",
        cupid=cupid,
        device_fingerprint_hash=fingerprint_hash,
        trusted_at=now,
        last_used_at=now,
        expires_at=now + timedelta(days=90),
    )


class TestConstraints:
    """The memory store mirrors the Postgres unique and FK constraints."""

    def test_second_pending_transaction_rejected(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        context = _context(store)
        store.transactions.create(_transaction(context.context_id, 1))

        with pytest.raises(ConstraintViolation):
            store.transactions.create(_transaction(context.context_id, 2))

    def test_pending_allowed_after_previous_expired(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        context = _context(store)
        first = store.transactions.create(_transaction(context.context_id, 1))
        store.transactions.update_by_id(first.transaction_id, status=TransactionStatus.EXPIRED)

        second = store.transactions.create(_transaction(context.context_id, 2))

        assert second.status is TransactionStatus.PENDING

    def test_transaction_requires_existing_context(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        with pytest.raises(ConstraintViolation):
            store.transactions.create(_transaction("missing-context"))

    def test_one_active_device_per_user_and_fingerprint(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        first = _device()
        store.devices.create(first)
        duplicate = _device()
        duplicate.device_id = "dev-other"

        with pytest.raises(ConstraintViolation):
            store.devices.create(duplicate)

        store.devices.update_by_id(first.device_id, status=DeviceStatus.REVOKED)
        store.devices.create(duplicate)
        assert len(store.devices.find_by("cupid", "user-1")) == 2

    def test_unknown_column_rejected(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        with pytest.raises(ValueError):
            store.contexts.find_by("1=1; --", "x")


class TestUnitOfWork:
    """Units of work are all-or-nothing."""

    def test_exception_restores_snapshot(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        context = _context(store)

        with pytest.raises(RuntimeError):
            with store.unit_of_work() as tx:
                tx.transactions.create(_transaction(context.context_id))
                tx.contexts.update_by_id(context.context_id, username="changed")
                raise RuntimeError("boom")

        assert store.transactions.find_by("context_id", context.context_id) == []
        assert store.contexts.find_by_id(context.context_id).username is None

    def test_committed_writes_visible(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        context = _context(store)

        with store.unit_of_work() as tx:
            tx.transactions.create(_transaction(context.context_id))

        assert len(store.transactions.find_by("context_id", context.context_id)) == 1

    def test_returned_records_are_copies(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        context = _context(store)

        loaded = store.contexts.find_by_id(context.context_id)
        loaded.username = "mutated"

        assert store.contexts.find_by_id(context.context_id).username is None


class TestRangeQueries:
    """Range queries back the expiry and retention sweeps."""

    def test_find_older_than_applies_filters(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        stale = _context(store)
        store.contexts.update_by_id(stale.context_id, expires_at=utcnow() - timedelta(minutes=1))
        done = _context(store)
        store.contexts.update_by_id(
            done.context_id,
            expires_at=utcnow() - timedelta(minutes=1),
            completed_at=utcnow(),
        )
        _context(store)

        found = store.contexts.find_older_than("expires_at", utcnow(), completed_at=None)

        assert [c.context_id for c in found] == [stale.context_id]

    def test_non_timestamp_column_rejected(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        with pytest.raises(ValueError):
            store.contexts.delete_older_than("cupid", utcnow())


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), persist=True)
        context = _context(store, claims={"roles": ["user"]})
        store.transactions.create(_transaction(context.context_id, metadata={"push_enabled": True}))

        reloaded = MemoryStore(fs_root=str(tmp_path), persist=True)

        restored = reloaded.contexts.find_by_id(context.context_id)
        assert restored.claims == {"roles": ["user"]}
        assert restored.expires_at == context.expires_at
        pending = reloaded.transactions.find_by("context_id", context.context_id)
        assert pending[0].status is TransactionStatus.PENDING
        assert pending[0].metadata == {"push_enabled": True}

    def test_state_path_needs_a_root(self):
        store = MemoryStore()

        with pytest.raises(RuntimeError):
            store._state_path()
