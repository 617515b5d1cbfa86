from __future__ import annotations

import hashlib
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from rideauth.logging import get_logger
from rideauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisRateLimitBackend:
    """Fixed-window request counters shared across processes through Redis.

    Each key is a hash holding ``count`` and ``start`` (epoch milliseconds).
    Both scripts run atomically inside Redis so concurrent workers never
    undercount. Keys expire one window after they start.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    _INCREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or now - start >= window then
  count = 1
  start = now
  redis.call('HSET', key, 'count', count, 'start', start, 'window', window)
  redis.call('PEXPIRE', key, window)
  return {count, start}
end

count = redis.call('HINCRBY', key, 'count', 1)
return {count, start}
"""

    _DECREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])

local data = redis.call('HMGET', key, 'count', 'start', 'window')
local count = tonumber(data[1])
local start = tonumber(data[2])
local window = tonumber(data[3])

if count == nil or start == nil or window == nil or now - start >= window or count <= 0 then
  return 0
end

return redis.call('HINCRBY', key, 'count', -1)
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._decrement = self.client.register_script(self._DECREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before routing counters through it."""
        self.client.ping()

    @staticmethod
    def _normalize_key(key: str) -> str:
        # Hash so client-controlled components cannot collide through delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def increment(self, key: str, *, now_ms: int, window_ms: int) -> Tuple[int, int]:
        try:
            count, start = self._increment(
                keys=[self._normalize_key(key)], args=[now_ms, window_ms]
            )
        except RedisError as exc:
            logger.error("rate_limit_backend_unavailable", error=str(exc))
            raise StoreUnavailable("rate limit backend unavailable", operation="increment") from exc
        return int(count), int(start)

    def decrement(self, key: str, *, now_ms: int) -> None:
        try:
            self._decrement(keys=[self._normalize_key(key)], args=[now_ms])
        except RedisError as exc:
            logger.error("rate_limit_backend_unavailable", error=str(exc))
            raise StoreUnavailable("rate limit backend unavailable", operation="decrement") from exc

    def purge_expired(self, *, now_ms: int) -> int:
        # Key TTLs already bound memory in Redis
        return 0

    def close(self) -> None:
        self.client.close()
