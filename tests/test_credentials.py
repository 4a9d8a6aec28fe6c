"""Demo credential directory used by the scenario users."""

import pytest

from ciamflow.service.credentials import (
    DEMO_PASSWORD,
    DEMO_USERS,
    CredentialStatus,
    DemoDirectory,
    DemoUser,
)
from ciamflow.service.devices import DeviceTrustRegistry, TrustState, hash_fingerprint
from ciamflow.storage.memory import MemoryStore


@pytest.fixture(scope="module")
def directory():
    return DemoDirectory()


class TestVerify:
    def test_valid_user(self, directory):
        result = directory.verify("MFAUser ", DEMO_PASSWORD)

        assert result.ok
        assert result.cupid == "user-mfauser"
        assert [o.option_id for o in result.mfa_options] == [1, 2]
        assert result.push_enabled is True

    def test_wrong_password(self, directory):
        assert directory.verify("mfauser", "nope").status is CredentialStatus.INVALID

    def test_unknown_user_is_indistinguishable(self, directory):
        result = directory.verify("nobody", DEMO_PASSWORD)

        assert result.status is CredentialStatus.INVALID
        assert result.cupid is None

    @pytest.mark.parametrize("username", ["pushfail", "pushexpired"])
    def test_push_outcomes_are_not_accounts(self, directory, username):
        # Push rejection and expiry come from the approve call and the clock
        assert username not in {u.username for u in DEMO_USERS}
        assert directory.verify(username, DEMO_PASSWORD).status is CredentialStatus.INVALID

    def test_locked_needs_correct_password_first(self, directory):
        assert directory.verify("lockeduser", "nope").status is CredentialStatus.INVALID
        assert directory.verify("lockeduser", DEMO_PASSWORD).status is CredentialStatus.LOCKED
        assert (
            directory.verify("mfalockeduser", DEMO_PASSWORD).status
            is CredentialStatus.MFA_LOCKED
        )

    def test_method_availability(self, directory):
        otp_only = directory.verify("otponlyuser", DEMO_PASSWORD)
        push_only = directory.verify("pushonlyuser", DEMO_PASSWORD)

        assert [o.option_id for o in otp_only.mfa_options] == [1]
        assert otp_only.push_enabled is False
        assert push_only.mfa_options == []

    def test_required_documents(self, directory):
        result = directory.verify("complianceuser", DEMO_PASSWORD)

        assert result.required_documents == ["terms-v1-2025"]


class TestSeedDevices:
    def test_seeds_active_and_expired_trust(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        registry = DeviceTrustRegistry()
        directory = DemoDirectory(
            (
                DemoUser("trusteduser", device_trust="active"),
                DemoUser("expiredtrustuser", device_trust="expired"),
                DemoUser("mfauser"),
            )
        )

        assert directory.seed_devices(store, registry) == 2
        assert directory.seed_devices(store, registry) == 0

        trusted = registry.check(
            store, hash_fingerprint("demo-device-trusteduser"), "user-trusteduser"
        )
        expired = registry.check(
            store, hash_fingerprint("demo-device-expiredtrustuser"), "user-expiredtrustuser"
        )
        assert trusted.state is TrustState.TRUSTED
        assert expired.state is TrustState.EXPIRED
