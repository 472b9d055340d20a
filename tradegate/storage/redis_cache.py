from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

# Compare-and-delete so a code can only ever be redeemed once, even when two
# verifications race on the same key.
_OTP_CONSUME_SCRIPT = """
local stored = redis.call('GET', KEYS[1])
if not stored then
  return -1
end
if stored == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""


def _otp_key(identity_id: str) -> str:
    return f"auth:otp:{identity_id}"


def _reset_key(token_hash: str) -> str:
    return f"auth:reset:{token_hash}"


def _refresh_revoked_key(token_hash: str) -> str:
    return f"auth:refresh_revoked:{token_hash}"


def _otp_result(raw) -> Optional[bool]:
    """Map the script result: None when nothing is cached, else match."""
    value = int(raw)
    if value < 0:
        return None
    return value == 1


class RedisCache:
    """Thin Redis wrapper for one-time codes, reset links and revocations.

    The cache is a fast path only. Every artifact stored here is also written
    to the durable store, which stays the source of truth when Redis is absent
    or has evicted a key.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_otp(self, identity_id: str, otp: str, expires_at: datetime) -> None:
        await self.client.set(_otp_key(identity_id), otp, ex=self._ttl_seconds(expires_at))

    async def consume_otp(self, identity_id: str, otp: str) -> Optional[bool]:
        result = await self.client.eval(_OTP_CONSUME_SCRIPT, 1, _otp_key(identity_id), otp)
        return _otp_result(result)

    async def clear_otp(self, identity_id: str) -> None:
        await self.client.delete(_otp_key(identity_id))

    async def cache_reset_token(
        self, token_hash: str, identity_id: str, expires_at: datetime
    ) -> None:
        await self.client.set(
            _reset_key(token_hash), identity_id, ex=self._ttl_seconds(expires_at)
        )

    async def get_reset_identity(self, token_hash: str) -> Optional[str]:
        return await self.client.get(_reset_key(token_hash))

    async def delete_reset_token(self, token_hash: str) -> None:
        await self.client.delete(_reset_key(token_hash))

    async def mark_refresh_revoked(self, token_hash: str, ttl_seconds: int) -> None:
        await self.client.set(
            _refresh_revoked_key(token_hash), "1", ex=max(1, int(ttl_seconds))
        )

    async def is_refresh_revoked(self, token_hash: str) -> bool:
        return bool(await self.client.exists(_refresh_revoked_key(token_hash)))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class _SyncClientAdapter:
    """Wraps a sync Redis client with awaitable method signatures."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def eval(self, script: str, numkeys: int, *args):
        return self._sync.eval(script, numkeys, *args)

    def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """Redis wrapper backed by a synchronous client, for use in tests.

    Avoids binding a connection pool to pytest's short-lived event loops while
    keeping the awaitable interface of :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()
