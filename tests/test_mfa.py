"""OTP and push challenges on top of the ledger."""

import pytest

from ciamflow.service.errors import ErrorKind, MFAError, TransactionError
from ciamflow.service.ledger import TransactionLedger
from ciamflow.service.mfa import MFAChallengeEngine, PushState
from ciamflow.storage.memory import MemoryStore
from ciamflow.storage.models import AuthContext, TransactionPhase, TransactionStatus


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def send(self, *, cupid, method, option_id, code):
        self.sent.append((cupid, method, option_id, code))


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def ledger():
    return TransactionLedger()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def _engine(ledger, dispatcher, **kwargs):
    kwargs.setdefault("test_code", "1234")
    return MFAChallengeEngine(
        ledger,
        secret="unit-test-secret",
        dispatcher=dispatcher,
        push_numbers=lambda: [7, 2, 4],
        **kwargs,
    )


def _selection(store, ledger, *, push_enabled=True):
    context = AuthContext.new("web", cupid="user-mfauser")
    store.contexts.create(context)
    selection = ledger.create_next(
        store,
        context.context_id,
        TransactionPhase.MFA,
        metadata={"otp_option_ids": [1, 2], "push_enabled": push_enabled},
    )
    return context, selection


class TestInitiate:
    def test_otp_code_is_dispatched_but_never_stored(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)

        challenge = engine.initiate(store, context, selection.transaction_id, "sms", 1)

        assert dispatcher.sent == [("user-mfauser", "sms", 1, "1234")]
        assert set(challenge.transaction.metadata) == {"otp_salt", "otp_digest"}
        assert len(challenge.transaction.metadata["otp_digest"]) == 64
        assert challenge.transaction.transaction_id != selection.transaction_id
        assert store.transactions.find_by_id(selection.transaction_id).status is TransactionStatus.CONSUMED

    def test_otp_option_must_be_offered(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)

        with pytest.raises(MFAError) as exc_info:
            engine.initiate(store, context, selection.transaction_id, "voice", 9)
        assert exc_info.value.kind is ErrorKind.INVALID_MFA_METHOD
        assert store.transactions.find_by_id(selection.transaction_id).status is TransactionStatus.PENDING

    def test_push_requires_registration(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger, push_enabled=False)

        with pytest.raises(MFAError):
            engine.initiate(store, context, selection.transaction_id, "push")

    def test_push_shows_three_numbers_including_display(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)

        challenge = engine.initiate(store, context, selection.transaction_id, "push")

        assert challenge.display_number == 7
        assert challenge.numbers == [2, 4, 7]
        assert challenge.transaction.display_number == 7

    def test_selection_id_cannot_be_reused(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        engine.initiate(store, context, selection.transaction_id, "sms", 1)

        with pytest.raises(TransactionError):
            engine.initiate(store, context, selection.transaction_id, "sms", 1)


class TestVerifyOTP:
    def test_correct_code_consumes_transaction(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "sms", 1)

        verified = engine.verify_otp(store, context, challenge.transaction.transaction_id, "1234")

        assert verified.status is TransactionStatus.CONSUMED
        assert verified.verification_result == "APPROVED"

    def test_replay_of_correct_code_fails(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "sms", 1)
        engine.verify_otp(store, context, challenge.transaction.transaction_id, "1234")

        with pytest.raises(TransactionError) as exc_info:
            engine.verify_otp(store, context, challenge.transaction.transaction_id, "1234")
        assert exc_info.value.kind is ErrorKind.TRANSACTION_CONSUMED

    def test_single_attempt_policy_invalidates_on_first_miss(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher, max_attempts=1)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "sms", 1)
        transaction_id = challenge.transaction.transaction_id

        with pytest.raises(MFAError) as exc_info:
            engine.verify_otp(store, context, transaction_id, "0000")
        assert exc_info.value.kind is ErrorKind.INVALID_MFA_CODE
        assert exc_info.value.detail == {"attempts_remaining": 0}

        with pytest.raises(TransactionError):
            engine.verify_otp(store, context, transaction_id, "1234")

    def test_multiple_attempt_policy_allows_retry(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher, max_attempts=3)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "sms", 1)
        transaction_id = challenge.transaction.transaction_id

        with pytest.raises(MFAError) as exc_info:
            engine.verify_otp(store, context, transaction_id, "0000")
        assert exc_info.value.detail == {"attempts_remaining": 2}

        verified = engine.verify_otp(store, context, transaction_id, "1234")
        assert verified.attempt_number == 2

    def test_push_transaction_rejects_otp(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "push")

        with pytest.raises(MFAError):
            engine.verify_otp(store, context, challenge.transaction.transaction_id, "1234")


class TestPush:
    def test_poll_pending_returns_retry_hint(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher, poll_interval_ms=500)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "push")

        poll = engine.poll_push(store, context, challenge.transaction.transaction_id)

        assert poll.state is PushState.PENDING
        assert poll.retry_after_ms == 500

    def test_matching_number_approves(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "push")
        transaction_id = challenge.transaction.transaction_id

        decided = engine.approve_push(store, transaction_id, 7)
        poll = engine.poll_push(store, context, transaction_id)

        assert decided.status is TransactionStatus.APPROVED
        assert poll.state is PushState.APPROVED
        assert poll.transaction.status is TransactionStatus.CONSUMED

    def test_wrong_number_rejects_for_every_later_poll(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "push")
        transaction_id = challenge.transaction.transaction_id

        decided = engine.approve_push(store, transaction_id, 4)

        assert decided.status is TransactionStatus.REJECTED
        for _ in range(2):
            with pytest.raises(MFAError) as exc_info:
                engine.poll_push(store, context, transaction_id)
            assert exc_info.value.kind is ErrorKind.PUSH_REJECTED

    def test_second_decision_refused(self, store, ledger, dispatcher):
        engine = _engine(ledger, dispatcher)
        context, selection = _selection(store, ledger)
        challenge = engine.initiate(store, context, selection.transaction_id, "push")
        transaction_id = challenge.transaction.transaction_id
        engine.approve_push(store, transaction_id, 4)

        with pytest.raises(TransactionError):
            engine.approve_push(store, transaction_id, 7)
