from __future__ import annotations

import contextlib
import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Generic, Iterator, List, Optional, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from ciamflow.config import IsolationLevel
from ciamflow.logging import get_logger
from ciamflow.storage.errors import ConstraintViolation, TransientStorageError
from ciamflow.storage.models import (
    ALL_RECORDS,
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
from ciamflow.storage.repository import check_columns, check_timestamp_column

T = TypeVar("T", bound=Record)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextlib.contextmanager
def _translate_errors() -> Iterator[None]:
    """Map driver exceptions onto the storage error types the services handle."""

    try:
        yield
    except (errors.SerializationFailure, errors.DeadlockDetected) as exc:
        raise TransientStorageError(
            "transaction conflict", sqlstate=getattr(exc, "sqlstate", None)
        ) from exc
    except errors.UniqueViolation as exc:
        raise ConstraintViolation(
            "unique constraint violated",
            {"constraint": getattr(getattr(exc, "diag", None), "constraint_name", None)},
        ) from exc
    except errors.ForeignKeyViolation as exc:
        raise ConstraintViolation(
            "referenced row missing",
            {"constraint": getattr(getattr(exc, "diag", None), "constraint_name", None)},
        ) from exc


def _param(record_type: Type[Record], column: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if column in record_type.json_fields and value is not None:
        return json.dumps(value)
    return value


class PostgresRepository(Generic[T]):
    """SQL built from whitelisted column names; values always go through parameters."""

    def __init__(
        self, record_type: Type[T], connect: Callable[[], ContextManager[Any]]
    ) -> None:
        self.record_type = record_type
        self._connect = connect

    @property
    def _table(self) -> str:
        return self.record_type.table

    def create(self, record: T) -> T:
        row = record.to_row()
        columns = list(row)
        placeholders = ", ".join(["%s"] * len(columns))
        params = [_param(self.record_type, col, row[col]) for col in columns]
        with _translate_errors(), self._connect() as conn:
            conn.execute(
                f"INSERT INTO {self._table} ({', '.join(columns)}) VALUES ({placeholders})",
                params,
            )
        return record

    def find_by_id(self, record_id: str) -> Optional[T]:
        with _translate_errors(), self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {self._table} WHERE {self.record_type.id_field} = %s",
                (record_id,),
            ).fetchone()
        return self.record_type.from_row(row) if row else None

    def _where(self, filters: Dict[str, Any]) -> tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in filters.items():
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = %s")
                params.append(_param(self.record_type, column, value))
        return " AND ".join(clauses) or "TRUE", params

    def _order_by(self) -> str:
        if "created_at" in self.record_type.columns():
            return " ORDER BY created_at"
        return ""

    def find_by(self, column: str, value: Any) -> List[T]:
        check_columns(self.record_type, [column])
        where, params = self._where({column: value})
        with _translate_errors(), self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self._table} WHERE {where}{self._order_by()}",
                params,
            ).fetchall()
        return [self.record_type.from_row(row) for row in rows]

    def find_older_than(
        self, column: str, cutoff: datetime, **filters: Any
    ) -> List[T]:
        check_timestamp_column(self.record_type, column)
        check_columns(self.record_type, filters)
        where, params = self._where(filters)
        with _translate_errors(), self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self._table} WHERE {column} < %s AND {where}{self._order_by()}",
                [cutoff, *params],
            ).fetchall()
        return [self.record_type.from_row(row) for row in rows]

    def delete_older_than(self, column: str, cutoff: datetime) -> int:
        check_timestamp_column(self.record_type, column)
        with _translate_errors(), self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self._table} WHERE {column} < %s", (cutoff,)
            )
            return cursor.rowcount or 0

    def update_by_id(self, record_id: str, **changes: Any) -> Optional[T]:
        check_columns(self.record_type, changes)
        if not changes:
            return self.find_by_id(record_id)
        assignments = ", ".join(f"{col} = %s" for col in changes)
        params = [_param(self.record_type, col, val) for col, val in changes.items()]
        params.append(record_id)
        with _translate_errors(), self._connect() as conn:
            row = conn.execute(
                f"UPDATE {self._table} SET {assignments} "
                f"WHERE {self.record_type.id_field} = %s RETURNING *",
                params,
            ).fetchone()
        return self.record_type.from_row(row) if row else None

    def update_by_filter(self, filters: Dict[str, Any], **changes: Any) -> int:
        check_columns(self.record_type, filters)
        check_columns(self.record_type, changes)
        if not changes:
            return 0
        assignments = ", ".join(f"{col} = %s" for col in changes)
        params = [_param(self.record_type, col, val) for col, val in changes.items()]
        where, where_params = self._where(filters)
        params.extend(where_params)
        with _translate_errors(), self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {self._table} SET {assignments} WHERE {where}", params
            )
            return cursor.rowcount or 0

    def delete_by_id(self, record_id: str) -> bool:
        with _translate_errors(), self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self._table} WHERE {self.record_type.id_field} = %s",
                (record_id,),
            )
            return bool(cursor.rowcount)


class _TransactionView:
    """Repositories pinned to the connection of one open transaction."""

    def __init__(self, conn: Any) -> None:
        connect = lambda: contextlib.nullcontext(conn)  # noqa: E731
        self.contexts = PostgresRepository(AuthContext, connect)
        self.transactions = PostgresRepository(AuthTransaction, connect)
        self.sessions = PostgresRepository(Session, connect)
        self.tokens = PostgresRepository(Token, connect)
        self.devices = PostgresRepository(TrustedDevice, connect)
        self.esign_obligations = PostgresRepository(ESignObligation, connect)
        self.esign_acceptances = PostgresRepository(ESignAcceptance, connect)
        self.audit_logs = PostgresRepository(AuditLog, connect)


class PostgresStore:
    """Postgres-backed store; every unit of work is one database transaction."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        isolation_level: IsolationLevel = IsolationLevel.SERIALIZABLE,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.isolation_level = IsolationLevel(isolation_level)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._bind_repositories()
        self._verify_required_schema()

    def _bind_repositories(self) -> None:
        # Outside a unit of work each call commits on its own
        self.contexts = PostgresRepository(AuthContext, self._autocommit)
        self.transactions = PostgresRepository(AuthTransaction, self._autocommit)
        self.sessions = PostgresRepository(Session, self._autocommit)
        self.tokens = PostgresRepository(Token, self._autocommit)
        self.devices = PostgresRepository(TrustedDevice, self._autocommit)
        self.esign_obligations = PostgresRepository(ESignObligation, self._autocommit)
        self.esign_acceptances = PostgresRepository(ESignAcceptance, self._autocommit)
        self.audit_logs = PostgresRepository(AuditLog, self._autocommit)

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _autocommit(self) -> Iterator[Any]:
        with self._connect() as conn, conn.transaction():
            yield conn

    @contextlib.contextmanager
    def unit_of_work(self) -> Iterator[_TransactionView]:
        # Commit failures surface when the transaction block exits, so the
        # translation wraps the whole block
        with _translate_errors(), self._connect() as conn, conn.transaction():
            conn.execute(
                f"SET TRANSACTION ISOLATION LEVEL {self.isolation_level.value.upper()}"
            )
            yield _TransactionView(conn)

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema has not been applied."""

        required_tables = [record_type.table for record_type in ALL_RECORDS]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/apply_schema.py first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresRepository", "PostgresStore", "SCHEMA_PATH"]
