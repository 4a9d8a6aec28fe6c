from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ciamflow.logging import get_logger
from ciamflow.service.audit import AuditRecorder
from ciamflow.service.context import FlowContextStore, RequestContext
from ciamflow.service.credentials import CredentialGate, CredentialResult, CredentialStatus
from ciamflow.service.devices import DeviceTrustRegistry
from ciamflow.service.errors import (
    CredentialError,
    DomainError,
    ErrorKind,
    ESignDeclinedError,
    MFAError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from ciamflow.service.esign import ESignDocument, ESignGate
from ciamflow.service.ledger import TransactionLedger
from ciamflow.service.mfa import PUSH_METHOD, MFAChallengeEngine, PushState
from ciamflow.service.tokens import IssuedTokens, Principal, TokenLifecycleManager
from ciamflow.service.unit_of_work import UnitOfWork
from ciamflow.storage.models import (
    AuthContext,
    AuthOutcome,
    AuthTransaction,
    Session,
    SessionStatus,
    TransactionPhase,
    TransactionStatus,
    TrustedDevice,
)
from ciamflow.storage.repository import StoreView

_CREDENTIAL_KINDS = {
    CredentialStatus.INVALID: ErrorKind.INVALID_CREDENTIALS,
    CredentialStatus.LOCKED: ErrorKind.ACCOUNT_LOCKED,
    CredentialStatus.MFA_LOCKED: ErrorKind.MFA_LOCKED,
}


class FlowOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    MFA_REQUIRED = "MFA_REQUIRED"
    MFA_PENDING = "MFA_PENDING"
    ESIGN_REQUIRED = "ESIGN_REQUIRED"
    DEVICE_BIND_REQUIRED = "DEVICE_BIND_REQUIRED"


@dataclass
class FlowResult:
    outcome: FlowOutcome
    context_id: Optional[str] = None
    transaction_id: Optional[str] = None
    tokens: Optional[IssuedTokens] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> Optional[str]:
        return self.tokens.session_id if self.tokens else None


class AuthFlowService:
    """Drives a login attempt through its steps.

    Every state-changing call is one unit of work: the current transaction is
    consumed, the next one (or the session and its tokens) is created, and the
    audit row is written together.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        gate: CredentialGate,
        *,
        contexts: FlowContextStore,
        ledger: TransactionLedger,
        mfa: MFAChallengeEngine,
        tokens: TokenLifecycleManager,
        devices: DeviceTrustRegistry,
        esign: ESignGate,
        audit: AuditRecorder,
    ) -> None:
        self.uow = uow
        self.gate = gate
        self.contexts = contexts
        self.ledger = ledger
        self.mfa = mfa
        self.tokens = tokens
        self.devices = devices
        self.esign = esign
        self.audit = audit
        self.logger = get_logger(__name__)
        self._last_cleanup = self._now()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Branching shared by every step that can finish verification
    # ------------------------------------------------------------------

    def _next_step(
        self,
        tx: StoreView,
        context: AuthContext,
        request: RequestContext,
        *,
        parent_transaction_id: Optional[str] = None,
    ) -> FlowResult:
        """eSign first, then device bind, then success. The order is fixed."""

        cupid = context.cupid or ""
        obligation = self.esign.pending(tx, cupid)
        if obligation is not None:
            transaction = self.ledger.advance(
                tx,
                context.context_id,
                TransactionPhase.ESIGN,
                parent_transaction_id=parent_transaction_id,
                esign_document_id=obligation.document_id,
            )
            document = self.esign.document(obligation.document_id)
            return FlowResult(
                FlowOutcome.ESIGN_REQUIRED,
                context_id=context.context_id,
                transaction_id=transaction.transaction_id,
                data={
                    "esign_document_id": obligation.document_id,
                    "is_mandatory": obligation.mandatory,
                    "document": _document_payload(document) if document else None,
                },
            )

        check = self.devices.check(tx, context.device_fingerprint, cupid)
        if not check.trusted:
            # Without a fingerprint the bind step still runs; it completes without trusting
            transaction = self.ledger.advance(
                tx,
                context.context_id,
                TransactionPhase.DEVICE_BIND,
                parent_transaction_id=parent_transaction_id,
            )
            return FlowResult(
                FlowOutcome.DEVICE_BIND_REQUIRED,
                context_id=context.context_id,
                transaction_id=transaction.transaction_id,
                data={"device_trust": check.message},
            )

        device_id = check.device.device_id if check.trusted and check.device else None
        if device_id:
            self.devices.touch(tx, device_id)
        return self._complete_success(tx, context, request, device_id=device_id)

    def _complete_success(
        self,
        tx: StoreView,
        context: AuthContext,
        request: RequestContext,
        *,
        device_id: Optional[str] = None,
    ) -> FlowResult:
        self.ledger.expire_all_pending(tx, context.context_id)
        session = self.tokens.open_session(tx, context, device_id=device_id)
        claims = context.claims or {}
        issued = self.tokens.issue_session_tokens(
            tx,
            session,
            roles=claims.get("roles") or [],
            profile=claims.get("profile") or {},
        )
        self.contexts.complete(
            tx, context, AuthOutcome.SUCCESS, session_id=session.session_id
        )
        self.audit.record(
            tx,
            "authentication_succeeded",
            "AUTH",
            cupid=context.cupid,
            context_id=context.context_id,
            session_id=session.session_id,
            ip_address=request.ip_address,
            device_id=device_id,
        )
        return FlowResult(
            FlowOutcome.SUCCESS,
            context_id=context.context_id,
            tokens=issued,
        )

    # ------------------------------------------------------------------
    # Logical endpoints
    # ------------------------------------------------------------------

    async def login(
        self, request: RequestContext, username: str, password: str
    ) -> FlowResult:
        identity = await asyncio.to_thread(self.gate.verify, username, password)
        if not identity.ok:
            kind = _CREDENTIAL_KINDS.get(identity.status, ErrorKind.INVALID_CREDENTIALS)

            def record_failure(tx: StoreView) -> None:
                self.audit.record(
                    tx,
                    "login_failed",
                    "AUTH",
                    severity="WARNING",
                    cupid=identity.cupid,
                    ip_address=request.ip_address,
                    reason=kind.value,
                )

            await self.uow.run(record_failure)
            self.logger.warning("login_failed", reason=kind.value, cupid=identity.cupid)
            raise CredentialError(kind)

        def step(tx: StoreView) -> FlowResult:
            return self._start_flow(tx, request, identity)

        return await self.uow.run(step)

    def _start_flow(
        self, tx: StoreView, request: RequestContext, identity: CredentialResult
    ) -> FlowResult:
        cupid = identity.cupid or ""
        for document_id in identity.required_documents:
            if not self.esign.is_satisfied(tx, cupid, document_id):
                self.esign.require(tx, cupid, document_id, reason="required_at_login")

        context = self.contexts.open(
            tx,
            request,
            cupid=cupid,
            guid=identity.guid,
            username=identity.username,
            claims={"roles": identity.roles, "profile": identity.profile},
        )
        self.audit.record(
            tx,
            "login_verified",
            "AUTH",
            cupid=cupid,
            context_id=context.context_id,
            ip_address=request.ip_address,
        )

        check = self.devices.check(tx, context.device_fingerprint, cupid)
        if check.trusted:
            # A trusted device skips MFA; credentials were still verified above
            result = self._next_step(tx, context, request)
            result.data.setdefault("device_trust", check.message)
            return result

        transaction = self.ledger.create_next(
            tx,
            context.context_id,
            TransactionPhase.MFA,
            metadata={
                "otp_option_ids": [option.option_id for option in identity.mfa_options],
                "push_enabled": identity.push_enabled,
            },
        )
        return FlowResult(
            FlowOutcome.MFA_REQUIRED,
            context_id=context.context_id,
            transaction_id=transaction.transaction_id,
            data={
                "otp_methods": [
                    {"value": option.masked_value, "mfa_option_id": option.option_id}
                    for option in identity.mfa_options
                ],
                "mobile_approve_status": "ENABLED" if identity.push_enabled else "NOT_REGISTERED",
                "device_trust": check.message,
            },
        )

    async def initiate_mfa(
        self,
        request: RequestContext,
        context_id: str,
        transaction_id: str,
        method: str,
        option_id: Optional[int] = None,
    ) -> FlowResult:
        def step(tx: StoreView) -> FlowResult:
            context = self.contexts.load(tx, context_id)
            challenge = self.mfa.initiate(tx, context, transaction_id, method, option_id)
            self.audit.record(
                tx,
                "mfa_initiated",
                "MFA",
                cupid=context.cupid,
                context_id=context_id,
                transaction_id=challenge.transaction.transaction_id,
                ip_address=request.ip_address,
                method=challenge.method,
            )
            data: Dict[str, Any] = {
                "method": challenge.method,
                "expires_at": challenge.transaction.expires_at.isoformat(),
            }
            if challenge.method == PUSH_METHOD:
                data["display_number"] = challenge.display_number
                data["numbers"] = challenge.numbers
                data["retry_after_ms"] = self.mfa.poll_interval_ms
            else:
                data["mfa_option_id"] = challenge.transaction.mfa_option_id
            return FlowResult(
                FlowOutcome.MFA_PENDING,
                context_id=context_id,
                transaction_id=challenge.transaction.transaction_id,
                data=data,
            )

        return await self.uow.run(step)

    async def verify_otp(
        self,
        request: RequestContext,
        context_id: str,
        transaction_id: str,
        code: str,
    ) -> FlowResult:
        def step(tx: StoreView) -> FlowResult:
            context = self.contexts.load(tx, context_id)
            try:
                transaction = self.mfa.verify_otp(tx, context, transaction_id, code)
            except MFAError as exc:
                self._record_mfa_failure(tx, context, transaction_id, request, exc)
                raise
            self.audit.record(
                tx,
                "mfa_verified",
                "MFA",
                cupid=context.cupid,
                context_id=context_id,
                transaction_id=transaction_id,
                ip_address=request.ip_address,
                method=transaction.mfa_method,
            )
            return self._next_step(
                tx, context, request, parent_transaction_id=transaction.transaction_id
            )

        return await self.uow.run(step)

    async def poll_push(
        self, request: RequestContext, context_id: str, transaction_id: str
    ) -> FlowResult:
        def step(tx: StoreView) -> FlowResult:
            context = self.contexts.load(tx, context_id)
            try:
                poll = self.mfa.poll_push(tx, context, transaction_id)
            except MFAError as exc:
                if exc.kind is ErrorKind.PUSH_REJECTED:
                    self._record_mfa_failure(tx, context, transaction_id, request, exc)
                raise
            if poll.state is PushState.PENDING:
                return FlowResult(
                    FlowOutcome.MFA_PENDING,
                    context_id=context_id,
                    transaction_id=transaction_id,
                    data={"retry_after_ms": poll.retry_after_ms},
                )
            self.audit.record(
                tx,
                "mfa_verified",
                "MFA",
                cupid=context.cupid,
                context_id=context_id,
                transaction_id=transaction_id,
                ip_address=request.ip_address,
                method=PUSH_METHOD,
            )
            return self._next_step(
                tx, context, request, parent_transaction_id=transaction_id
            )

        return await self.uow.run(step)

    async def approve_push(
        self, transaction_id: str, selected_number: int
    ) -> AuthTransaction:
        """Companion-channel callback; the waiting client learns the result by polling."""

        def step(tx: StoreView) -> AuthTransaction:
            decided = self.mfa.approve_push(tx, transaction_id, selected_number)
            approved = decided.status is TransactionStatus.APPROVED
            self.audit.record(
                tx,
                "mfa_push_approved" if approved else "mfa_push_rejected",
                "MFA",
                severity="INFO" if approved else "WARNING",
                context_id=decided.context_id,
                transaction_id=transaction_id,
            )
            return decided

        return await self.uow.run(step)

    def _record_mfa_failure(
        self,
        tx: StoreView,
        context: AuthContext,
        transaction_id: str,
        request: RequestContext,
        exc: DomainError,
    ) -> None:
        self.audit.record(
            tx,
            "mfa_failed",
            "MFA",
            severity="WARNING",
            cupid=context.cupid,
            context_id=context.context_id,
            transaction_id=transaction_id,
            ip_address=request.ip_address,
            reason=exc.kind.value,
        )

    async def accept_esign(
        self,
        request: RequestContext,
        context_id: str,
        transaction_id: str,
        document_id: Optional[str] = None,
    ) -> FlowResult:
        def step(tx: StoreView) -> FlowResult:
            context = self.contexts.load(tx, context_id)
            transaction = self._take_esign(tx, context, transaction_id, document_id)
            decided = self.ledger.record_decision(
                tx, transaction, TransactionStatus.APPROVED, esign_action="ACCEPT"
            )
            self.ledger.mark_consumed(tx, decided)
            self.esign.accept(
                tx,
                context.cupid or "",
                transaction.esign_document_id or "",
                transaction_id=transaction_id,
                context_id=context_id,
                ip_address=request.ip_address,
            )
            self.audit.record(
                tx,
                "esign_accepted",
                "ESIGN",
                cupid=context.cupid,
                context_id=context_id,
                transaction_id=transaction_id,
                ip_address=request.ip_address,
                document_id=transaction.esign_document_id,
            )
            return self._next_step(
                tx, context, request, parent_transaction_id=transaction_id
            )

        return await self.uow.run(step)

    async def decline_esign(
        self,
        request: RequestContext,
        context_id: str,
        transaction_id: str,
        document_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Declining ends the flow; the user has to authenticate again."""

        def step(tx: StoreView) -> None:
            context = self.contexts.load(tx, context_id)
            transaction = self._take_esign(tx, context, transaction_id, document_id)
            decided = self.ledger.record_decision(
                tx, transaction, TransactionStatus.REJECTED, esign_action="DECLINE"
            )
            self.ledger.mark_consumed(tx, decided)
            self.esign.decline(tx, context.cupid or "", transaction.esign_document_id or "")
            self.contexts.complete(tx, context, AuthOutcome.ESIGN_DECLINED)
            self.audit.record(
                tx,
                "esign_declined",
                "ESIGN",
                severity="WARNING",
                cupid=context.cupid,
                context_id=context_id,
                transaction_id=transaction_id,
                ip_address=request.ip_address,
                document_id=transaction.esign_document_id,
                reason=reason,
            )
            raise ESignDeclinedError(transaction.esign_document_id or "")

        await self.uow.run(step)

    def _take_esign(
        self,
        tx: StoreView,
        context: AuthContext,
        transaction_id: str,
        document_id: Optional[str],
    ) -> AuthTransaction:
        transaction = self.ledger.require_pending(
            self.ledger.read(
                tx, transaction_id, context.context_id, phase=TransactionPhase.ESIGN
            )
        )
        if document_id and document_id != transaction.esign_document_id:
            raise ValidationError(
                "document does not match the pending signature",
                detail={"document_id": document_id},
            )
        return transaction

    async def bind_device(
        self,
        request: RequestContext,
        context_id: str,
        transaction_id: str,
        bind: bool,
        *,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> FlowResult:
        """Record the bind decision; the flow always completes here."""

        def step(tx: StoreView) -> FlowResult:
            context = self.contexts.load(tx, context_id)
            transaction = self.ledger.require_pending(
                self.ledger.read(
                    tx, transaction_id, context_id, phase=TransactionPhase.DEVICE_BIND
                )
            )
            decided = self.ledger.record_decision(
                tx, transaction, TransactionStatus.APPROVED, device_bind_decision=bind
            )
            self.ledger.mark_consumed(tx, decided)
            device: Optional[TrustedDevice] = None
            if bind and context.device_fingerprint:
                device = self.devices.trust(
                    tx,
                    context.device_fingerprint,
                    context.cupid or "",
                    guid=context.guid,
                    app_id=context.app_id,
                    device_name=device_name,
                    device_type=device_type,
                )
            self.audit.record(
                tx,
                "device_bound" if device else "device_bind_skipped",
                "DEVICE",
                cupid=context.cupid,
                context_id=context_id,
                transaction_id=transaction_id,
                ip_address=request.ip_address,
                device_id=device.device_id if device else None,
            )
            result = self._complete_success(
                tx, context, request, device_id=device.device_id if device else None
            )
            result.data["device_bound"] = device is not None
            return result

        return await self.uow.run(step)

    async def refresh(self, request: RequestContext, refresh_token: str) -> IssuedTokens:
        def step(tx: StoreView) -> IssuedTokens:
            try:
                issued = self.tokens.rotate(tx, refresh_token)
            except TokenError as exc:
                self.audit.record(
                    tx,
                    "token_refresh_failed",
                    "TOKEN",
                    severity="CRITICAL" if exc.kind is ErrorKind.TOKEN_REUSE_DETECTED else "WARNING",
                    ip_address=request.ip_address,
                    reason=exc.kind.value,
                )
                raise
            self.audit.record(
                tx,
                "token_refreshed",
                "TOKEN",
                session_id=issued.session_id,
                ip_address=request.ip_address,
            )
            return issued

        try:
            return await self.uow.run(step)
        except TokenError as exc:
            await self.tokens.denylist(getattr(exc, "revoked_tokens", []))
            raise

    async def revoke_token(self, request: RequestContext, token: str) -> bool:
        def step(tx: StoreView):
            revoked = self.tokens.revoke_token(tx, token)
            if revoked is not None:
                self.audit.record(
                    tx,
                    "token_revoked",
                    "TOKEN",
                    session_id=revoked.session_id,
                    ip_address=request.ip_address,
                    token_type=revoked.token_type.value,
                )
            return revoked

        revoked = await self.uow.run(step)
        if revoked is not None:
            await self.tokens.denylist([revoked])
        return revoked is not None

    async def introspect(self, token: str) -> Dict[str, Any]:
        if await self.tokens.is_denylisted(token):
            return {"active": False}
        return await self.uow.run(lambda tx: self.tokens.introspect(tx, token))

    async def authenticate(self, access_token: Optional[str]) -> Principal:
        if not access_token or await self.tokens.is_denylisted(access_token):
            raise TokenError(ErrorKind.TOKEN_INVALID)
        principal = await self.uow.run(
            lambda tx: self.tokens.authenticate_access(tx, access_token)
        )
        if principal is None:
            raise TokenError(ErrorKind.TOKEN_INVALID)
        return principal

    async def logout(
        self,
        request: RequestContext,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> bool:
        """End the session behind either token. In-flight transactions are untouched."""

        def step(tx: StoreView):
            session_id: Optional[str] = None
            if access_token:
                principal = self.tokens.authenticate_access(tx, access_token)
                session_id = principal.session_id if principal else None
            if session_id is None and refresh_token:
                validation = self.tokens.validate_refresh(tx, refresh_token)
                if validation.token is not None and not validation.is_reuse:
                    session_id = validation.token.session_id
            if session_id is None:
                return None
            revoked = self.tokens.revoke_session(
                tx,
                session_id,
                reason="logout",
                revoked_by="user",
                status=SessionStatus.LOGGED_OUT,
            )
            self.audit.record(
                tx,
                "logout",
                "SESSION",
                session_id=session_id,
                ip_address=request.ip_address,
            )
            return revoked

        revoked = await self.uow.run(step)
        if revoked is None:
            return False
        await self.tokens.denylist(revoked)
        return True

    async def list_devices(self, principal: Principal) -> List[TrustedDevice]:
        return await self.uow.run(lambda tx: self.devices.list_for_user(tx, principal.cupid))

    async def revoke_device(self, principal: Principal, device_id: str) -> None:
        def step(tx: StoreView) -> bool:
            revoked = self.devices.revoke(tx, device_id, cupid=principal.cupid)
            if revoked:
                self.audit.record(
                    tx,
                    "device_revoked",
                    "DEVICE",
                    cupid=principal.cupid,
                    session_id=principal.session_id,
                    device_id=device_id,
                )
            return revoked

        if not await self.uow.run(step):
            raise NotFoundError("device not found", detail={"device_id": device_id})

    def document(self, document_id: str) -> ESignDocument:
        document = self.esign.document(document_id)
        if document is None:
            raise NotFoundError("document not found", detail={"document_id": document_id})
        return document

    async def list_sessions(self, principal: Principal) -> List[Session]:
        return await self.uow.run(lambda tx: self.tokens.list_sessions(tx, principal.cupid))

    async def end_session(self, principal: Principal, session_id: str) -> None:
        """Revoke one of the caller's own sessions. Foreign ids read as not found."""

        def step(tx: StoreView):
            session = tx.sessions.find_by_id(session_id)
            if session is None or session.cupid != principal.cupid or not session.is_live():
                return None
            revoked = self.tokens.revoke_session(
                tx, session_id, reason="user_revocation", revoked_by=principal.cupid
            )
            self.audit.record(
                tx,
                "session_revoked",
                "SESSION",
                cupid=principal.cupid,
                session_id=session_id,
                revoked_from=principal.session_id,
            )
            return revoked

        revoked = await self.uow.run(step)
        if revoked is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        await self.tokens.denylist(revoked)

    async def end_all_sessions(self, principal: Principal) -> int:
        def step(tx: StoreView):
            revoked = self.tokens.revoke_by_user(tx, principal.cupid)
            self.audit.record(
                tx,
                "sessions_revoked",
                "SESSION",
                severity="WARNING",
                cupid=principal.cupid,
                session_id=principal.session_id,
                revoked_tokens=len(revoked),
            )
            return revoked

        revoked = await self.uow.run(step)
        await self.tokens.denylist(revoked)
        return len({token.session_id for token in revoked})

    async def cleanup_expired(self) -> Dict[str, int]:
        now = self._now()

        def sweep(tx: StoreView) -> Dict[str, int]:
            return {
                "transactions": self.ledger.sweep_expired(tx, now),
                "contexts": self.contexts.expire_stale(tx, now),
                "tokens": self.tokens.cleanup_expired(tx, now),
                "devices": self.devices.sweep_expired(tx, now),
                "audit_logs": self.audit.purge_older_than(tx, now),
            }

        counts = await self.uow.run(sweep)
        self._last_cleanup = now
        if any(counts.values()):
            self.logger.info("expired_state_cleaned", **counts)
        return counts

    async def maybe_cleanup(self, interval_seconds: int = 300) -> Dict[str, int]:
        """Run cleanup if the interval has elapsed since the last run."""

        if (self._now() - self._last_cleanup).total_seconds() >= interval_seconds:
            return await self.cleanup_expired()
        return {}


def _document_payload(document: ESignDocument) -> Dict[str, Any]:
    return {
        "document_id": document.document_id,
        "title": document.title,
        "version": document.version,
        "mandatory": document.mandatory,
    }


__all__ = ["AuthFlowService", "FlowOutcome", "FlowResult"]
