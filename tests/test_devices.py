"""Trusted device records: trust, lazy expiry, revocation, sweep."""

from datetime import timedelta

import pytest

from ciamflow.service.devices import DeviceTrustRegistry, TrustState, hash_fingerprint
from ciamflow.storage.memory import MemoryStore
from ciamflow.storage.models import DeviceStatus, utcnow

CUPID = "user-mfauser"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def registry():
    return DeviceTrustRegistry(ttl_days=30)


class TestTrust:
    def test_unknown_without_fingerprint(self, store, registry):
        check = registry.check(store, None, CUPID)

        assert check.state is TrustState.UNKNOWN
        assert check.message == "device unknown"

    def test_trusted_after_binding(self, store, registry):
        fingerprint = hash_fingerprint("laptop-1")
        device = registry.trust(store, fingerprint, CUPID, device_name="Laptop")

        check = registry.check(store, fingerprint, CUPID)

        assert check.trusted
        assert check.device.device_id == device.device_id
        assert device.expires_at - device.trusted_at == timedelta(days=30)

    def test_trust_is_per_user(self, store, registry):
        fingerprint = hash_fingerprint("shared-kiosk")
        registry.trust(store, fingerprint, CUPID)

        assert not registry.is_trusted(store, fingerprint, "user-someone-else")

    def test_rebinding_replaces_active_record(self, store, registry):
        fingerprint = hash_fingerprint("laptop-1")
        first = registry.trust(store, fingerprint, CUPID)
        second = registry.trust(store, fingerprint, CUPID)

        statuses = {d.device_id: d.status for d in registry.list_for_user(store, CUPID)}
        assert statuses == {
            first.device_id: DeviceStatus.REVOKED,
            second.device_id: DeviceStatus.ACTIVE,
        }


class TestExpiry:
    def test_lazy_expiry_is_persisted(self, store, registry):
        fingerprint = hash_fingerprint("laptop-1")
        device = registry.trust(store, fingerprint, CUPID)
        later = utcnow() + timedelta(days=31)

        check = registry.check(store, fingerprint, CUPID, now=later)

        assert check.state is TrustState.EXPIRED
        assert check.message == "trust expired"
        assert store.devices.find_by_id(device.device_id).status is DeviceStatus.EXPIRED
        assert registry.check(store, fingerprint, CUPID).state is TrustState.EXPIRED

    def test_sweep_marks_stale_records(self, store, registry):
        registry.trust(store, hash_fingerprint("laptop-1"), CUPID)
        registry.trust(store, hash_fingerprint("phone-1"), CUPID)

        assert registry.sweep_expired(store) == 0
        assert registry.sweep_expired(store, utcnow() + timedelta(days=31)) == 2


class TestRevocation:
    def test_revoked_device_is_not_trusted(self, store, registry):
        fingerprint = hash_fingerprint("laptop-1")
        device = registry.trust(store, fingerprint, CUPID)

        assert registry.revoke(store, device.device_id, cupid=CUPID) is True

        check = registry.check(store, fingerprint, CUPID)
        assert check.state is TrustState.REVOKED
        assert check.message == "device unknown"

    def test_cannot_revoke_someone_elses_device(self, store, registry):
        device = registry.trust(store, hash_fingerprint("laptop-1"), CUPID)

        assert registry.revoke(store, device.device_id, cupid="user-other") is False
        assert store.devices.find_by_id(device.device_id).status is DeviceStatus.ACTIVE

    def test_revoke_all_for_user(self, store, registry):
        registry.trust(store, hash_fingerprint("laptop-1"), CUPID)
        registry.trust(store, hash_fingerprint("phone-1"), CUPID)

        assert registry.revoke_all_for_user(store, CUPID) == 2
        assert all(
            d.status is DeviceStatus.REVOKED for d in registry.list_for_user(store, CUPID)
        )
