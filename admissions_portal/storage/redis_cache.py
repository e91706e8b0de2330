from __future__ import annotations

import hashlib
import math
import time
from typing import Callable, List, Optional

from redis import Redis

from admissions_portal.logging import get_logger
from admissions_portal.service.throttle import ThrottleDecision
from admissions_portal.storage.memory import normalize_email

logger = get_logger(__name__)


def connect(redis_url: str, *, socket_timeout: float = 5.0) -> Redis:
    return Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def verify_connection(client: Redis) -> None:
    """Assert Redis connectivity before enabling shared session state."""
    client.ping()


class RedisSessionRegistry:
    """Session registry shared across processes.

    Each principal's live tokens sit in a sorted set scored by a per-principal
    sequence, so the lowest score is always the oldest token. Read-modify-write
    steps run as Lua scripts and are atomic per key on the server.
    """

    _REGISTER_SCRIPT = """
local live = KEYS[1]
local seq = KEYS[2]
local token = ARGV[1]
local max = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local n = redis.call('INCR', seq)
redis.call('ZADD', live, n, token)
local evicted = {}
local excess = redis.call('ZCARD', live) - max
if excess > 0 then
  local popped = redis.call('ZPOPMIN', live, excess)
  for i = 1, #popped, 2 do
    table.insert(evicted, popped[i])
  end
end
redis.call('EXPIRE', live, ttl)
redis.call('EXPIRE', seq, ttl)
return evicted
"""

    _TRIM_SCRIPT = """
local live = KEYS[1]
local max = tonumber(ARGV[1])
local excess = redis.call('ZCARD', live) - max
if excess > 0 then
  redis.call('ZPOPMIN', live, excess)
  return excess
end
return 0
"""

    _CLEAR_SCRIPT = """
local count = redis.call('ZCARD', KEYS[1])
redis.call('DEL', KEYS[1], KEYS[2])
return count
"""

    def __init__(
        self,
        client: Redis,
        *,
        max_sessions: int = 5,
        token_ttl_seconds: int = 24 * 3600,
        prefix: str = "portal:session",
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.client = client
        self.max_sessions = max_sessions
        self.token_ttl_seconds = token_ttl_seconds
        self.prefix = prefix
        self._register = client.register_script(self._REGISTER_SCRIPT)
        self._trim = client.register_script(self._TRIM_SCRIPT)
        self._clear = client.register_script(self._CLEAR_SCRIPT)

    def _live_key(self, principal_id: str) -> str:
        return f"{self.prefix}:live:{principal_id}"

    def _seq_key(self, principal_id: str) -> str:
        return f"{self.prefix}:seq:{principal_id}"

    def register(self, principal_id: str, token: str) -> List[str]:
        evicted = self._register(
            keys=[self._live_key(principal_id), self._seq_key(principal_id)],
            args=[token, self.max_sessions, self.token_ttl_seconds],
        )
        evicted = list(evicted or [])
        if evicted:
            logger.info(
                "session_evicted", principal_id=principal_id, evicted=len(evicted)
            )
        return evicted

    def revoke(self, principal_id: str, token: str) -> bool:
        return bool(self.client.zrem(self._live_key(principal_id), token))

    def is_live(self, principal_id: str, token: str) -> bool:
        return self.client.zscore(self._live_key(principal_id), token) is not None

    def live_tokens(self, principal_id: str) -> List[str]:
        return list(self.client.zrange(self._live_key(principal_id), 0, -1))

    def clear(self, principal_id: str) -> int:
        return int(
            self._clear(
                keys=[self._live_key(principal_id), self._seq_key(principal_id)]
            )
        )

    def sweep(self) -> int:
        trimmed = 0
        for key in self.client.scan_iter(match=f"{self.prefix}:live:*", count=200):
            trimmed += int(self._trim(keys=[key], args=[self.max_sessions]))
        if trimmed:
            logger.info("session_sweep_trimmed", trimmed=trimmed)
        return trimmed


class RedisSessionVersionStore:
    """Session version counters shared across processes."""

    DEFAULT_VERSION = 1

    _BUMP_SCRIPT = """
redis.call('SETNX', KEYS[1], ARGV[1])
return redis.call('INCR', KEYS[1])
"""

    def __init__(self, client: Redis, *, prefix: str = "portal:session") -> None:
        self.client = client
        self.prefix = prefix
        self._bump = client.register_script(self._BUMP_SCRIPT)

    def _key(self, principal_id: str) -> str:
        return f"{self.prefix}:version:{principal_id}"

    def current_version(self, principal_id: str) -> int:
        raw = self.client.get(self._key(principal_id))
        return int(raw) if raw is not None else self.DEFAULT_VERSION

    def bump_version(self, principal_id: str) -> int:
        version = int(self._bump(keys=[self._key(principal_id)], args=[self.DEFAULT_VERSION]))
        logger.info("session_version_bumped", principal_id=principal_id, version=version)
        return version


class RedisLoginThrottle:
    """Login throttle shared across processes.

    Windows live in hashes that expire with the window, so Redis drops
    elapsed entries itself and ``purge_expired`` has nothing to do.
    """

    # Returns {allowed, retry_after_seconds}
    _ATTEMPT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])
if count == nil or reset_at == nil or now > reset_at then
  count = 0
  reset_at = now + window
  redis.call('HSET', key, 'count', count, 'reset_at', reset_at)
  redis.call('EXPIRE', key, math.ceil(window) + 1)
end
if count >= max then
  return {0, math.max(1, math.ceil(reset_at - now))}
end
return {1, 0}
"""

    _FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'reset_at')
local reset_at = tonumber(data[2])
if data[1] == false or reset_at == nil or now > reset_at then
  redis.call('HSET', key, 'count', 0, 'reset_at', now + window)
  redis.call('EXPIRE', key, math.ceil(window) + 1)
end
return redis.call('HINCRBY', key, 'count', 1)
"""

    _SUCCESS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  redis.call('HSET', KEYS[1], 'count', 0)
end
return 0
"""

    def __init__(
        self,
        client: Redis,
        *,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        clock: Optional[Callable[[], float]] = None,
        prefix: str = "portal:login",
    ) -> None:
        self.client = client
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._clock = clock or time.time
        self._attempt = client.register_script(self._ATTEMPT_SCRIPT)
        self._failure = client.register_script(self._FAILURE_SCRIPT)
        self._success = client.register_script(self._SUCCESS_SCRIPT)

    def _key(self, email: str) -> str:
        # Hashed so submitted addresses never appear in key names
        digest = hashlib.sha256(normalize_email(email).encode()).hexdigest()
        return f"{self.prefix}:{digest}"

    def attempt(self, email: str) -> ThrottleDecision:
        allowed, retry_after = self._attempt(
            keys=[self._key(email)],
            args=[self._clock(), self.window_seconds, self.max_attempts],
        )
        if int(allowed):
            return ThrottleDecision(True)
        decision = ThrottleDecision(False, max(1, math.ceil(float(retry_after))))
        logger.warning(
            "login_rate_limited",
            email=normalize_email(email),
            retry_after_seconds=decision.retry_after_seconds,
        )
        return decision

    def record_failure(self, email: str) -> int:
        return int(
            self._failure(
                keys=[self._key(email)], args=[self._clock(), self.window_seconds]
            )
        )

    def record_success(self, email: str) -> None:
        self._success(keys=[self._key(email)])

    def failures(self, email: str) -> int:
        count, reset_at = self.client.hmget(self._key(email), "count", "reset_at")
        if count is None or reset_at is None or self._clock() > float(reset_at):
            return 0
        return int(count)

    def purge_expired(self) -> int:
        return 0
