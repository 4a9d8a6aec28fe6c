from __future__ import annotations

import contextlib
import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generic, Iterator, List, Optional, Type, TypeVar

from ciamflow.logging import get_logger
from ciamflow.storage.errors import ConstraintViolation
from ciamflow.storage.models import (
    ALL_RECORDS,
    AuditLog,
    AuthContext,
    AuthTransaction,
    DeviceStatus,
    ESignAcceptance,
    ESignObligation,
    Record,
    Session,
    Token,
    TransactionStatus,
    TrustedDevice,
)
from ciamflow.storage.repository import check_columns, check_timestamp_column

T = TypeVar("T", bound=Record)

# Child table -> (column, parent record type)
_FOREIGN_KEYS: Dict[Type[Record], tuple[str, Type[Record]]] = {
    AuthTransaction: ("context_id", AuthContext),
    Token: ("session_id", Session),
}


class MemoryRepository(Generic[T]):
    """Dict-backed repository; every call runs under the store's data lock."""

    def __init__(self, store: "MemoryStore", record_type: Type[T]) -> None:
        self._store = store
        self.record_type = record_type

    @property
    def _rows(self) -> Dict[str, T]:
        return self._store._tables[self.record_type.table]  # type: ignore[return-value]

    def create(self, record: T) -> T:
        with self._store._data_lock:
            if record.record_id in self._rows:
                raise ConstraintViolation(
                    f"duplicate {self.record_type.table} id",
                    {"id": record.record_id},
                )
            self._store._check_foreign_key(record)
            self._store._check_unique(record)
            self._rows[record.record_id] = copy.deepcopy(record)
            self._store._after_write()
            return copy.deepcopy(record)

    def find_by_id(self, record_id: str) -> Optional[T]:
        with self._store._data_lock:
            row = self._rows.get(record_id)
            return copy.deepcopy(row) if row is not None else None

    def find_by(self, column: str, value: Any) -> List[T]:
        check_columns(self.record_type, [column])
        with self._store._data_lock:
            return [
                copy.deepcopy(row)
                for row in self._rows.values()
                if getattr(row, column) == value
            ]

    def update_by_id(self, record_id: str, **changes: Any) -> Optional[T]:
        check_columns(self.record_type, changes)
        with self._store._data_lock:
            current = self._rows.get(record_id)
            if current is None:
                return None
            updated = copy.deepcopy(current)
            for column, value in changes.items():
                setattr(updated, column, self.record_type.coerce(column, value))
            self._store._check_unique(updated)
            self._rows[record_id] = updated
            self._store._after_write()
            return copy.deepcopy(updated)

    def update_by_filter(self, filters: Dict[str, Any], **changes: Any) -> int:
        check_columns(self.record_type, filters)
        check_columns(self.record_type, changes)
        with self._store._data_lock:
            matched = [
                record_id
                for record_id, row in self._rows.items()
                if all(getattr(row, col) == val for col, val in filters.items())
            ]
            for record_id in matched:
                row = self._rows[record_id]
                for column, value in changes.items():
                    setattr(row, column, self.record_type.coerce(column, value))
            if matched:
                self._store._after_write()
            return len(matched)

    def delete_by_id(self, record_id: str) -> bool:
        with self._store._data_lock:
            removed = self._rows.pop(record_id, None)
            if removed is not None:
                self._store._after_write()
            return removed is not None

    def find_older_than(
        self, column: str, cutoff: datetime, **filters: Any
    ) -> List[T]:
        check_timestamp_column(self.record_type, column)
        check_columns(self.record_type, filters)
        with self._store._data_lock:
            return [
                copy.deepcopy(row)
                for row in self._rows.values()
                if getattr(row, column) is not None
                and getattr(row, column) < cutoff
                and all(getattr(row, col) == val for col, val in filters.items())
            ]

    def delete_older_than(self, column: str, cutoff: datetime) -> int:
        check_timestamp_column(self.record_type, column)
        with self._store._data_lock:
            stale = [
                record_id
                for record_id, row in self._rows.items()
                if getattr(row, column) is not None and getattr(row, column) < cutoff
            ]
            for record_id in stale:
                del self._rows[record_id]
            if stale:
                self._store._after_write()
            return len(stale)


class MemoryStore:
    """In-process store for tests and single-node development.

    A unit of work holds the data lock for its whole duration and restores a
    snapshot of every table when the block raises, which gives the same
    all-or-nothing visibility the Postgres store gets from a transaction.
    """

    def __init__(self, fs_root: str | None = None, *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        # RLock so repository calls nest inside a unit of work on the same thread
        self._data_lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Record]] = {
            record_type.table: {} for record_type in ALL_RECORDS
        }
        self._uow_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = bool(persist and self.fs_root)
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        self.contexts = MemoryRepository(self, AuthContext)
        self.transactions = MemoryRepository(self, AuthTransaction)
        self.sessions = MemoryRepository(self, Session)
        self.tokens = MemoryRepository(self, Token)
        self.devices = MemoryRepository(self, TrustedDevice)
        self.esign_obligations = MemoryRepository(self, ESignObligation)
        self.esign_acceptances = MemoryRepository(self, ESignAcceptance)
        self.audit_logs = MemoryRepository(self, AuditLog)

        if self.persist:
            self._load_state()

    @contextlib.contextmanager
    def unit_of_work(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = copy.deepcopy(self._tables)
            self._uow_depth += 1
            try:
                yield self
            except BaseException:
                self._tables = snapshot
                raise
            finally:
                self._uow_depth -= 1
            self._after_write()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        if self.persist:
            with self._data_lock:
                self._persist_state()

    def _check_foreign_key(self, record: Record) -> None:
        fk = _FOREIGN_KEYS.get(type(record))
        if not fk:
            return
        column, parent = fk
        parent_id = getattr(record, column)
        if parent_id not in self._tables[parent.table]:
            raise ConstraintViolation(
                f"{parent.table} row missing", {column: parent_id}
            )

    def _check_unique(self, record: Record) -> None:
        """Mirror the partial unique indexes of the Postgres schema."""

        rows = self._tables[record.table]
        if isinstance(record, AuthTransaction) and record.status is TransactionStatus.PENDING:
            for other in rows.values():
                if (
                    other.record_id != record.record_id
                    and other.context_id == record.context_id  # type: ignore[attr-defined]
                    and other.status is TransactionStatus.PENDING  # type: ignore[attr-defined]
                ):
                    raise ConstraintViolation(
                        "context already has a pending transaction",
                        {"context_id": record.context_id},
                    )
        elif isinstance(record, TrustedDevice) and record.status is DeviceStatus.ACTIVE:
            for other in rows.values():
                if (
                    other.record_id != record.record_id
                    and other.cupid == record.cupid  # type: ignore[attr-defined]
                    and other.device_fingerprint_hash == record.device_fingerprint_hash  # type: ignore[attr-defined]
                    and other.status is DeviceStatus.ACTIVE  # type: ignore[attr-defined]
                ):
                    raise ConstraintViolation(
                        "device already trusted", {"device_id": other.record_id}
                    )
        elif isinstance(record, Token):
            for other in rows.values():
                if (
                    other.record_id != record.record_id
                    and other.token_value_hash == record.token_value_hash  # type: ignore[attr-defined]
                ):
                    raise ConstraintViolation("duplicate token hash")

    def _after_write(self) -> None:
        # Writes inside a unit of work are flushed once, at commit
        if self.persist and self._uow_depth == 0:
            self._persist_state()

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("in-memory persistence requires SHARED_FS_ROOT")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _json_default(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        raise TypeError(f"unserializable value: {type(value).__name__}")

    def _persist_state(self) -> None:
        state = {
            table: [row.to_row() for row in rows.values()]
            for table, rows in self._tables.items()
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=self._json_default))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for record_type in ALL_RECORDS:
            self._tables[record_type.table] = {
                row[record_type.id_field]: record_type.from_row(row)
                for row in data.get(record_type.table, [])
            }
        self.logger.info(
            "memory_store_state_loaded",
            path=str(path),
            tables={table: len(rows) for table, rows in self._tables.items()},
        )
        return True


__all__ = ["MemoryRepository", "MemoryStore"]
