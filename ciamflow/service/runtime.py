from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from ciamflow.config import get_settings, reset_settings_cache
from ciamflow.logging import get_logger
from ciamflow.service.audit import AuditRecorder
from ciamflow.service.context import FlowContextStore
from ciamflow.service.credentials import CredentialGate, DemoDirectory
from ciamflow.service.devices import DeviceTrustRegistry
from ciamflow.service.esign import ESignGate
from ciamflow.service.flow import AuthFlowService
from ciamflow.service.ledger import TransactionLedger
from ciamflow.service.mfa import MFAChallengeEngine
from ciamflow.service.tokens import TokenLifecycleManager
from ciamflow.service.unit_of_work import UnitOfWork
from ciamflow.storage.memory import MemoryStore
from ciamflow.storage.postgres import PostgresStore
from ciamflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, gate: Optional[CredentialGate] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=self.settings.persist_memory_store,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.database_pool_min_size,
                    max_size=self.settings.database_pool_max_size,
                    isolation_level=self.settings.uow_isolation_level,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # The denylist only short-circuits reads; the database stays authoritative
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        if gate is None and self.settings.demo_directory_enabled:
            gate = DemoDirectory()
        if gate is None:
            raise RuntimeError(
                "No credential gate configured; enable DEMO_DIRECTORY_ENABLED or pass a gate"
            )
        self.gate = gate

        self.uow = UnitOfWork.from_settings(self.store, self.settings)
        self.ledger = TransactionLedger.from_settings(self.settings)
        self.contexts = FlowContextStore(ttl_minutes=self.settings.auth_context_ttl_minutes)
        self.devices = DeviceTrustRegistry(ttl_days=self.settings.device_trust_ttl_days)
        self.esign = ESignGate()
        self.audit = AuditRecorder(retention_days=self.settings.audit_retention_days)
        self.mfa = MFAChallengeEngine(
            self.ledger,
            secret=self.settings.jwt_secret,
            otp_length=self.settings.otp_length,
            max_attempts=self.settings.otp_max_attempts,
            poll_interval_ms=self.settings.push_poll_interval_ms,
            test_code=self.settings.otp_test_code if self.settings.test_mode else None,
        )
        self.tokens = TokenLifecycleManager(self.settings, cache=self.cache)
        self.flow = AuthFlowService(
            self.uow,
            self.gate,
            contexts=self.contexts,
            ledger=self.ledger,
            mfa=self.mfa,
            tokens=self.tokens,
            devices=self.devices,
            esign=self.esign,
            audit=self.audit,
        )

        if isinstance(self.gate, DemoDirectory):
            with self.store.unit_of_work() as tx:
                self.gate.seed_devices(tx, self.devices)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            otp_max_attempts=self.settings.otp_max_attempts,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(gate: Optional[CredentialGate] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime(gate=gate)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
