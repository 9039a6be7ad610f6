from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for the shared role cache and login rate limits.

    Sessions and blacklist entries are never cached here; the store is their
    only source of truth.
    """

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Any = None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _role_key(subject_id: str) -> str:
        return f"auth:role:{subject_id}"

    async def get_role_assignment(self, subject_id: str) -> Optional[Dict[str, Any]]:
        cached = await self.client.get(self._role_key(subject_id))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as a miss
            return None

    async def set_role_assignment(
        self, subject_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(self._role_key(subject_id), json.dumps(payload), ex=ttl_seconds)

    async def invalidate_role(self, subject_id: str) -> None:
        await self.client.delete(self._role_key(subject_id))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Hash so user-supplied components (emails) cannot collide on delimiters
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return allowed_bool, int(float(tokens)), int(reset_after)
        return allowed_bool

    async def close(self) -> None:
        """Close the connection pool on shutdown."""
        await self.client.aclose()
