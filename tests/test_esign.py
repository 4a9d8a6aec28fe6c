"""Signature obligations and the acceptance log."""

import pytest

from ciamflow.service.esign import ESignDocument, ESignGate
from ciamflow.storage.memory import MemoryStore

CUPID = "user-complianceuser"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def gate():
    return ESignGate(
        [
            ESignDocument("terms-v1-2025", "Terms and Conditions", "1.0"),
            ESignDocument("privacy-v2", "Privacy Notice", "2.0", mandatory=False),
        ]
    )


class TestObligations:
    def test_one_obligation_per_user(self, store, gate):
        gate.require(store, CUPID, "terms-v1-2025")
        gate.require(store, CUPID, "privacy-v2", mandatory=False)

        pending = gate.pending(store, CUPID)
        assert pending.document_id == "privacy-v2"
        assert pending.mandatory is False
        assert len(store.esign_obligations.find_by("cupid", CUPID)) == 1

    def test_accept_clears_matching_obligation(self, store, gate):
        gate.require(store, CUPID, "terms-v1-2025")

        acceptance = gate.accept(store, CUPID, "terms-v1-2025", transaction_id="txn_1")

        assert gate.pending(store, CUPID) is None
        assert gate.is_satisfied(store, CUPID, "terms-v1-2025")
        assert acceptance.transaction_id == "txn_1"

    def test_accepting_other_document_keeps_obligation(self, store, gate):
        gate.require(store, CUPID, "terms-v1-2025")

        gate.accept(store, CUPID, "privacy-v2")

        assert gate.pending(store, CUPID).document_id == "terms-v1-2025"

    def test_decline_keeps_obligation(self, store, gate):
        gate.require(store, CUPID, "terms-v1-2025")

        gate.decline(store, CUPID, "terms-v1-2025")

        assert gate.pending(store, CUPID) is not None


class TestCatalogue:
    def test_document_lookup(self, gate):
        assert gate.document("terms-v1-2025").title == "Terms and Conditions"
        assert gate.document("missing") is None
