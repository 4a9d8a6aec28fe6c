from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for short-lived token revocation state."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_until(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Deny an access token until it would have expired anyway."""

        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
