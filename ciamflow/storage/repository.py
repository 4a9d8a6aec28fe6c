from __future__ import annotations

from datetime import datetime
from typing import Any, ContextManager, Dict, Generic, List, Optional, Protocol, TypeVar

from ciamflow.storage.models import (
    AuditLog,
    AuthContext,
    AuthTransaction,
    ESignAcceptance,
    ESignObligation,
    Record,
    Session,
    Token,
    TrustedDevice,
)

T = TypeVar("T", bound=Record)


class Repository(Protocol, Generic[T]):
    """Per-entity data access used by the engine.

    ``find_by`` and ``update_by_filter`` accept only the record's own columns;
    anything else raises ``ValueError`` so callers cannot smuggle SQL through
    a column name. A ``None`` filter value matches NULL. The ``*_older_than``
    pair compares a timestamp column strictly below ``cutoff`` and exists for
    the expiry and retention sweeps.
    """

    def create(self, record: T) -> T: ...

    def find_by_id(self, record_id: str) -> Optional[T]: ...

    def find_by(self, column: str, value: Any) -> List[T]: ...

    def update_by_id(self, record_id: str, **changes: Any) -> Optional[T]: ...

    def update_by_filter(self, filters: Dict[str, Any], **changes: Any) -> int: ...

    def delete_by_id(self, record_id: str) -> bool: ...

    def find_older_than(
        self, column: str, cutoff: datetime, **filters: Any
    ) -> List[T]: ...

    def delete_older_than(self, column: str, cutoff: datetime) -> int: ...


class StoreView(Protocol):
    """Repositories bound to one transactional scope."""

    contexts: Repository[AuthContext]
    transactions: Repository[AuthTransaction]
    sessions: Repository[Session]
    tokens: Repository[Token]
    devices: Repository[TrustedDevice]
    esign_obligations: Repository[ESignObligation]
    esign_acceptances: Repository[ESignAcceptance]
    audit_logs: Repository[AuditLog]


class Store(StoreView, Protocol):
    def unit_of_work(self) -> ContextManager[StoreView]: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def check_columns(record_type: type[Record], names: Any) -> None:
    allowed = set(record_type.columns())
    unknown = [name for name in names if name not in allowed]
    if unknown:
        raise ValueError(
            f"unknown column(s) for {record_type.table}: {', '.join(sorted(unknown))}"
        )


def check_timestamp_column(record_type: type[Record], column: str) -> None:
    check_columns(record_type, [column])
    if not column.endswith("_at"):
        raise ValueError(f"{record_type.table}.{column} is not a timestamp column")


__all__ = [
    "Repository",
    "Store",
    "StoreView",
    "check_columns",
    "check_timestamp_column",
]
