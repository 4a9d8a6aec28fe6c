from __future__ import annotations

import json
import secrets
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Type, TypeVar


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TransactionPhase(str, Enum):
    MFA = "MFA"
    ESIGN = "ESIGN"
    DEVICE_BIND = "DEVICE_BIND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CONSUMED = "CONSUMED"


class AuthType(str, Enum):
    INITIAL = "INITIAL"
    STEP_UP = "STEP_UP"


class AuthOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    ESIGN_DECLINED = "ESIGN_DECLINED"
    MFA_FAILED = "MFA_FAILED"
    EXPIRED = "EXPIRED"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    LOGGED_OUT = "LOGGED_OUT"


class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"
    ID = "ID"


class TokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ROTATED = "ROTATED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class DeviceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


R = TypeVar("R", bound="Record")


class Record:
    """Row mapping shared by every persisted dataclass.

    ``table`` and ``id_field`` drive the generic repositories; enum and JSON
    columns are converted on the way in and out of storage.
    """

    table: ClassVar[str]
    id_field: ClassVar[str]
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}
    json_fields: ClassVar[FrozenSet[str]] = frozenset()

    @classmethod
    def columns(cls) -> List[str]:
        return [f.name for f in fields(cls)]  # type: ignore[arg-type]

    @property
    def record_id(self) -> str:
        return getattr(self, self.id_field)

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            row[f.name] = value
        return row

    @classmethod
    def from_row(cls: Type[R], row: Mapping[str, Any]) -> R:
        kwargs: Dict[str, Any] = {}
        for name in cls.columns():
            if name not in row:
                continue
            kwargs[name] = cls.coerce(name, row[name])
        return cls(**kwargs)

    @classmethod
    def coerce(cls, name: str, value: Any) -> Any:
        if value is None:
            return None
        enum_type = cls.enum_fields.get(name)
        if enum_type is not None:
            return enum_type(value)
        if name.endswith("_at"):
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            return _aware(value)
        if name in cls.json_fields and isinstance(value, str):
            return json.loads(value)
        return value


@dataclass
class AuthContext(Record):
    context_id: str
    app_id: str
    created_at: datetime
    expires_at: datetime
    cupid: Optional[str] = None
    guid: Optional[str] = None
    username: Optional[str] = None
    app_version: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    correlation_id: Optional[str] = None
    session_id: Optional[str] = None
    auth_type: AuthType = AuthType.INITIAL
    requires_additional_steps: bool = True
    auth_outcome: Optional[AuthOutcome] = None
    completed_at: Optional[datetime] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    table: ClassVar[str] = "auth_contexts"
    id_field: ClassVar[str] = "context_id"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {
        "auth_type": AuthType,
        "auth_outcome": AuthOutcome,
    }
    json_fields: ClassVar[FrozenSet[str]] = frozenset({"claims"})

    @classmethod
    def new(
        cls,
        app_id: str,
        *,
        ttl_minutes: int = 15,
        **attrs: Any,
    ) -> "AuthContext":
        now = utcnow()
        return cls(
            context_id=str(uuid.uuid4()),
            app_id=app_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            **attrs,
        )

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


@dataclass
class AuthTransaction(Record):
    transaction_id: str
    context_id: str
    sequence_number: int
    phase: TransactionPhase
    status: TransactionStatus
    created_at: datetime
    expires_at: datetime
    parent_transaction_id: Optional[str] = None
    mfa_method: Optional[str] = None
    mfa_option_id: Optional[int] = None
    display_number: Optional[int] = None
    selected_number: Optional[int] = None
    verification_result: Optional[str] = None
    attempt_number: int = 0
    esign_document_id: Optional[str] = None
    esign_action: Optional[str] = None
    device_bind_decision: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    consumed_at: Optional[datetime] = None

    table: ClassVar[str] = "auth_transactions"
    id_field: ClassVar[str] = "transaction_id"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {
        "phase": TransactionPhase,
        "status": TransactionStatus,
    }
    json_fields: ClassVar[FrozenSet[str]] = frozenset({"metadata"})

    @classmethod
    def new(
        cls,
        context_id: str,
        phase: TransactionPhase,
        sequence_number: int,
        *,
        ttl_seconds: int,
        parent_transaction_id: Optional[str] = None,
        **payload: Any,
    ) -> "AuthTransaction":
        now = utcnow()
        return cls(
            transaction_id=f"txn_{secrets.token_urlsafe(24)}",
            context_id=context_id,
            sequence_number=sequence_number,
            phase=phase,
            status=TransactionStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            parent_transaction_id=parent_transaction_id,
            **payload,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Session(Record):
    session_id: str
    cupid: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    context_id: Optional[str] = None
    guid: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None

    table: ClassVar[str] = "sessions"
    id_field: ClassVar[str] = "session_id"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"status": SessionStatus}

    @classmethod
    def new(cls, cupid: str, *, ttl_days: int = 30, **attrs: Any) -> "Session":
        now = utcnow()
        return cls(
            session_id=str(uuid.uuid4()),
            cupid=cupid,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(days=ttl_days),
            **attrs,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.status is SessionStatus.ACTIVE and (now or utcnow()) < self.expires_at


@dataclass
class Token(Record):
    token_id: str
    session_id: str
    token_type: TokenType
    token_value_hash: str
    created_at: datetime
    expires_at: datetime
    parent_token_id: Optional[str] = None
    status: TokenStatus = TokenStatus.ACTIVE
    revoked_at: Optional[datetime] = None

    table: ClassVar[str] = "tokens"
    id_field: ClassVar[str] = "token_id"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {
        "token_type": TokenType,
        "status": TokenStatus,
    }


@dataclass
class TrustedDevice(Record):
    device_id: str
    cupid: str
    device_fingerprint_hash: str
    trusted_at: datetime
    last_used_at: datetime
    expires_at: datetime
    guid: Optional[str] = None
    app_id: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    status: DeviceStatus = DeviceStatus.ACTIVE
    revoked_at: Optional[datetime] = None

    table: ClassVar[str] = "trusted_devices"
    id_field: ClassVar[str] = "device_id"
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"status": DeviceStatus}


@dataclass
class ESignObligation(Record):
    cupid: str
    document_id: str
    created_at: datetime
    mandatory: bool = True
    reason: Optional[str] = None

    table: ClassVar[str] = "esign_obligations"
    id_field: ClassVar[str] = "cupid"


@dataclass
class ESignAcceptance(Record):
    acceptance_id: str
    cupid: str
    document_id: str
    accepted_at: datetime
    transaction_id: Optional[str] = None
    context_id: Optional[str] = None
    ip_address: Optional[str] = None

    table: ClassVar[str] = "esign_acceptances"
    id_field: ClassVar[str] = "acceptance_id"


@dataclass
class AuditLog(Record):
    audit_id: str
    event_type: str
    event_category: str
    created_at: datetime
    severity: str = "INFO"
    cupid: Optional[str] = None
    context_id: Optional[str] = None
    transaction_id: Optional[str] = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    ip_address: Optional[str] = None
    event_data: Dict[str, Any] = field(default_factory=dict)

    table: ClassVar[str] = "audit_logs"
    id_field: ClassVar[str] = "audit_id"
    json_fields: ClassVar[FrozenSet[str]] = frozenset({"event_data"})


ALL_RECORDS: tuple[Type[Record], ...] = (
    AuthContext,
    AuthTransaction,
    Session,
    Token,
    TrustedDevice,
    ESignObligation,
    ESignAcceptance,
    AuditLog,
)
