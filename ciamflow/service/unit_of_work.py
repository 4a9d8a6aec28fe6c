from __future__ import annotations

import asyncio
from typing import Callable, Optional, Tuple, TypeVar

from ciamflow.config import Settings
from ciamflow.logging import get_logger
from ciamflow.service.errors import DomainError
from ciamflow.storage.errors import TransientStorageError
from ciamflow.storage.repository import Store, StoreView

R = TypeVar("R")


class UnitOfWork:
    """Atomic, retryable boundary around a compound write.

    ``fn`` receives the transactional view and runs in a worker thread so
    blocking drivers never stall the event loop. Serialization failures and
    deadlocks are retried with exponential backoff; every other exception
    propagates on the first occurrence.

    A :class:`DomainError` raised by ``fn`` commits the unit before it is
    re-raised. Any other exception rolls the unit back.
    """

    def __init__(
        self,
        store: Store,
        *,
        max_attempts: int = 3,
        backoff_ms: int = 25,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.backoff_ms = max(0, backoff_ms)
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, store: Store, settings: Settings) -> "UnitOfWork":
        return cls(
            store,
            max_attempts=settings.uow_max_attempts,
            backoff_ms=settings.uow_backoff_ms,
        )

    def _run_once(
        self, fn: Callable[[StoreView], R]
    ) -> Tuple[Optional[R], Optional[DomainError]]:
        with self.store.unit_of_work() as tx:
            try:
                return fn(tx), None
            except DomainError as exc:
                # Domain outcomes keep the writes that led to them: lazy
                # expiry, attempt counters, reuse revocation
                return None, exc

    async def run(self, fn: Callable[[StoreView], R]) -> R:
        attempt = 0
        while True:
            attempt += 1
            try:
                result, domain_error = await asyncio.to_thread(self._run_once, fn)
                if domain_error is not None:
                    raise domain_error
                return result  # type: ignore[return-value]
            except TransientStorageError as exc:
                if attempt >= self.max_attempts:
                    self.logger.error(
                        "unit_of_work_retries_exhausted",
                        attempts=self.max_attempts,
                        sqlstate=exc.sqlstate,
                    )
                    raise
                # backoff_ms * 2^(attempt-1): 25ms, 50ms, 100ms...
                delay_ms = self.backoff_ms * (2 ** (attempt - 1))
                self.logger.warning(
                    "unit_of_work_retry",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    backoff_ms=delay_ms,
                    sqlstate=exc.sqlstate,
                )
                if delay_ms:
                    await asyncio.sleep(delay_ms / 1000)
