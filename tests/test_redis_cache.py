"""Access-token denylist on top of an injected Redis client."""

from datetime import timedelta

from ciamflow.storage.models import utcnow
from ciamflow.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    def __init__(self):
        self.values = {}

    async def set(self, key, value, ex=None):
        self.values[key] = (value, ex)

    async def exists(self, key):
        return 1 if key in self.values else 0


class TestDenylist:
    async def test_denylisted_until_expiry(self):
        client = FakeAsyncRedis()
        cache = RedisCache("redis://unused", client=client)

        await cache.denylist_access_token("jti-1", 60)

        assert await cache.is_access_token_denylisted("jti-1") is True
        assert await cache.is_access_token_denylisted("jti-2") is False
        assert client.values["auth:access:denylist:jti-1"] == ("1", 60)

    async def test_non_positive_ttl_is_skipped(self):
        client = FakeAsyncRedis()
        cache = RedisCache("redis://unused", client=client)

        await cache.denylist_access_token("jti-1", 0)

        assert client.values == {}


class TestTtl:
    def test_ttl_clamped_to_one_second(self):
        assert RedisCache.ttl_until(utcnow() - timedelta(minutes=5)) == 1

    def test_naive_datetimes_are_utc(self):
        naive = (utcnow() + timedelta(minutes=10)).replace(tzinfo=None)

        assert 590 <= RedisCache.ttl_until(naive) <= 600
