from __future__ import annotations

import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from ciamflow.logging import get_logger
from ciamflow.service.errors import ErrorKind, MFAError, TransactionError
from ciamflow.service.ledger import TransactionLedger
from ciamflow.storage.models import (
    AuthContext,
    AuthTransaction,
    TransactionPhase,
    TransactionStatus,
)
from ciamflow.storage.repository import StoreView

OTP_METHODS = frozenset({"sms", "voice"})
PUSH_METHOD = "push"
MFA_METHODS = OTP_METHODS | {PUSH_METHOD}


class OTPDispatcher(Protocol):
    def send(self, *, cupid: str, method: str, option_id: int, code: str) -> None: ...


class LoggingOTPDispatcher:
    """Development dispatcher: records that a code went out, never the code."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)

    def send(self, *, cupid: str, method: str, option_id: int, code: str) -> None:
        self.logger.info(
            "otp_dispatched",
            cupid=cupid,
            method=method,
            mfa_option_id=option_id,
            code_length=len(code),
        )


def _random_push_numbers() -> List[int]:
    return secrets.SystemRandom().sample(range(1, 10), 3)


@dataclass
class MFAChallenge:
    transaction: AuthTransaction
    method: str
    display_number: Optional[int] = None
    numbers: List[int] = field(default_factory=list)


class PushState(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"


@dataclass
class PushPoll:
    state: PushState
    transaction: AuthTransaction
    retry_after_ms: Optional[int] = None


class MFAChallengeEngine:
    """OTP and push challenge/response on top of the transaction ledger.

    OTP codes are kept only as an HMAC digest in the transaction metadata.
    Push challenges show three distinct numbers; the companion channel must
    submit the display number while the transaction is still PENDING.
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        *,
        secret: str,
        dispatcher: Optional[OTPDispatcher] = None,
        otp_length: int = 6,
        max_attempts: int = 1,
        poll_interval_ms: int = 1000,
        test_code: Optional[str] = None,
        push_numbers: Callable[[], Sequence[int]] = _random_push_numbers,
    ) -> None:
        self.ledger = ledger
        self._secret = secret.encode("utf-8")
        self.dispatcher = dispatcher or LoggingOTPDispatcher()
        self.otp_length = otp_length
        self.max_attempts = max(1, max_attempts)
        self.poll_interval_ms = poll_interval_ms
        self.test_code = test_code
        self._push_numbers = push_numbers
        self.logger = get_logger(__name__)

    def _generate_code(self) -> str:
        if self.test_code:
            return self.test_code
        return "".join(secrets.choice(string.digits) for _ in range(self.otp_length))

    def _digest(self, salt: str, code: str) -> str:
        return hmac.new(self._secret, f"{salt}:{code}".encode("utf-8"), hashlib.sha256).hexdigest()

    def initiate(
        self,
        tx: StoreView,
        context: AuthContext,
        selection_transaction_id: str,
        method: str,
        option_id: Optional[int] = None,
    ) -> MFAChallenge:
        """Consume the selection step and advance to a transaction carrying the challenge."""

        selection = self.ledger.read(
            tx, selection_transaction_id, context.context_id, phase=TransactionPhase.MFA
        )
        self.ledger.require_pending(selection)
        offered = selection.metadata or {}
        method = (method or "").lower()
        if method not in MFA_METHODS:
            raise MFAError(ErrorKind.INVALID_MFA_METHOD, detail={"method": method})
        if method in OTP_METHODS:
            if option_id is None or option_id not in offered.get("otp_option_ids", []):
                raise MFAError(
                    ErrorKind.INVALID_MFA_METHOD,
                    "mfa_option_id is required and must be one of the offered options",
                    detail={"method": method},
                )
        elif not offered.get("push_enabled"):
            raise MFAError(
                ErrorKind.INVALID_MFA_METHOD,
                "push approval is not registered for this user",
                detail={"method": method},
            )

        self.ledger.mark_consumed(tx, selection)
        if method in OTP_METHODS:
            code = self._generate_code()
            salt = secrets.token_hex(8)
            transaction = self.ledger.advance(
                tx,
                context.context_id,
                TransactionPhase.MFA,
                parent_transaction_id=selection.transaction_id,
                mfa_method=method,
                mfa_option_id=option_id,
                metadata={"otp_salt": salt, "otp_digest": self._digest(salt, code)},
            )
            self.dispatcher.send(
                cupid=context.cupid or "", method=method, option_id=option_id, code=code
            )
            self.logger.info(
                "mfa_otp_initiated",
                context_id=context.context_id,
                transaction_id=transaction.transaction_id,
                method=method,
            )
            return MFAChallenge(transaction=transaction, method=method)

        drawn = list(self._push_numbers())
        # Numbers arrive in random order; the first one is the answer
        display_number = drawn[0]
        numbers = sorted(drawn)
        transaction = self.ledger.advance(
            tx,
            context.context_id,
            TransactionPhase.MFA,
            parent_transaction_id=selection.transaction_id,
            mfa_method=PUSH_METHOD,
            display_number=display_number,
            metadata={"numbers": numbers},
        )
        self.logger.info(
            "mfa_push_initiated",
            context_id=context.context_id,
            transaction_id=transaction.transaction_id,
        )
        return MFAChallenge(
            transaction=transaction,
            method=PUSH_METHOD,
            display_number=display_number,
            numbers=numbers,
        )

    def verify_otp(
        self,
        tx: StoreView,
        context: AuthContext,
        transaction_id: str,
        code: str,
    ) -> AuthTransaction:
        """Check ``code``; returns the consumed transaction on success.

        A wrong code counts against ``max_attempts``. Once the allowance is spent
        the transaction is REJECTED and consumed, forcing a new initiation.
        """

        transaction = self.ledger.require_pending(
            self.ledger.read(
                tx, transaction_id, context.context_id, phase=TransactionPhase.MFA
            )
        )
        if transaction.mfa_method not in OTP_METHODS:
            raise MFAError(ErrorKind.INVALID_MFA_METHOD, detail={"method": transaction.mfa_method})

        metadata = transaction.metadata or {}
        expected = metadata.get("otp_digest", "")
        supplied = self._digest(metadata.get("otp_salt", ""), code or "")
        if expected and hmac.compare_digest(expected, supplied):
            approved = self.ledger.record_decision(
                tx,
                transaction,
                TransactionStatus.APPROVED,
                verification_result="APPROVED",
                attempt_number=transaction.attempt_number + 1,
            )
            self.logger.info(
                "mfa_otp_verified",
                context_id=context.context_id,
                transaction_id=transaction_id,
            )
            return self.ledger.mark_consumed(tx, approved)

        attempts = transaction.attempt_number + 1
        remaining = max(0, self.max_attempts - attempts)
        if remaining == 0:
            rejected = self.ledger.record_decision(
                tx,
                transaction,
                TransactionStatus.REJECTED,
                verification_result="REJECTED",
                attempt_number=attempts,
            )
            self.ledger.mark_consumed(tx, rejected)
        else:
            self.ledger.record_attempt(tx, transaction)
        self.logger.warning(
            "mfa_otp_invalid",
            context_id=context.context_id,
            transaction_id=transaction_id,
            attempts=attempts,
            attempts_remaining=remaining,
        )
        raise MFAError(
            ErrorKind.INVALID_MFA_CODE, detail={"attempts_remaining": remaining}
        )

    def _push_transaction(self, tx: StoreView, transaction_id: str) -> AuthTransaction:
        found = tx.transactions.find_by_id(transaction_id)
        if found is None:
            raise TransactionError(ErrorKind.TRANSACTION_NOT_FOUND)
        transaction = self.ledger.read(
            tx, transaction_id, found.context_id, phase=TransactionPhase.MFA
        )
        if transaction.mfa_method != PUSH_METHOD:
            raise MFAError(ErrorKind.INVALID_MFA_METHOD, detail={"method": transaction.mfa_method})
        return transaction

    def approve_push(
        self, tx: StoreView, transaction_id: str, selected_number: int
    ) -> AuthTransaction:
        """Companion-channel decision. Never issues anything itself."""

        transaction = self.ledger.require_pending(self._push_transaction(tx, transaction_id))
        if selected_number == transaction.display_number:
            decided = self.ledger.record_decision(
                tx,
                transaction,
                TransactionStatus.APPROVED,
                selected_number=selected_number,
                verification_result="APPROVED",
            )
            self.logger.info("mfa_push_approved", transaction_id=transaction_id)
        else:
            decided = self.ledger.record_decision(
                tx,
                transaction,
                TransactionStatus.REJECTED,
                selected_number=selected_number,
                verification_result="REJECTED",
            )
            self.logger.warning("mfa_push_rejected", transaction_id=transaction_id)
        return decided

    def poll_push(
        self, tx: StoreView, context: AuthContext, transaction_id: str
    ) -> PushPoll:
        """Bounded read for the waiting client; never blocks server-side."""

        transaction = self.ledger.read(
            tx, transaction_id, context.context_id, phase=TransactionPhase.MFA
        )
        if transaction.mfa_method != PUSH_METHOD:
            raise MFAError(ErrorKind.INVALID_MFA_METHOD, detail={"method": transaction.mfa_method})

        status = transaction.status
        if status is TransactionStatus.PENDING:
            return PushPoll(PushState.PENDING, transaction, self.poll_interval_ms)
        if status is TransactionStatus.EXPIRED:
            raise TransactionError(ErrorKind.TRANSACTION_EXPIRED)
        if status is TransactionStatus.APPROVED:
            consumed = self.ledger.mark_consumed(tx, transaction)
            return PushPoll(PushState.APPROVED, consumed)
        if status is TransactionStatus.REJECTED:
            self.ledger.mark_consumed(tx, transaction)
            raise MFAError(ErrorKind.PUSH_REJECTED)
        # CONSUMED: a rejected challenge stays rejected for every later poll
        if transaction.verification_result == "REJECTED":
            raise MFAError(ErrorKind.PUSH_REJECTED)
        raise TransactionError(ErrorKind.TRANSACTION_CONSUMED)


__all__ = [
    "LoggingOTPDispatcher",
    "MFAChallenge",
    "MFAChallengeEngine",
    "MFA_METHODS",
    "OTPDispatcher",
    "OTP_METHODS",
    "PushPoll",
    "PushState",
]
