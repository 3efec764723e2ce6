"""
Redis Stores
============
Redis-backed sliding-window counter and block ledger backend.

Both use Lua scripts so that each operation is a single atomic step on the
Redis server, shared by every application instance.
"""

import uuid
from datetime import datetime
from typing import Dict, Iterable, Optional

import structlog
from redis.exceptions import NoScriptError, RedisError

from ..errors import FastStoreUnavailable
from ..models import CounterSnapshot, RateLimitRule
from .base import BaseBlockStore, BaseCounterStore, from_epoch_ms, to_epoch_ms

logger = structlog.get_logger(__name__)

# Lua script for an atomic sliding-window log in a sorted set.
# Every attempt is recorded, including refused ones, so the returned count is
# exact under concurrency. Returns {attempts, reset_at_ms}.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
redis.call('ZADD', key, now, member)
local count = redis.call('ZCARD', key)
redis.call('PEXPIRE', key, window)

-- room for one more attempt opens once entry (count - limit) ages out
local index = 0
if count > limit then
    index = count - limit
end

local reset_at = now + window
local entry = redis.call('ZRANGE', key, index, index, 'WITHSCORES')
if entry[2] then
    reset_at = tonumber(entry[2]) + window
end

return {count, reset_at}
"""

# Lua script that creates a block only when no live block exists.
# Returns 1 when a block was created, 0 when a live one was kept.
BLOCK_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local block_until = tonumber(ARGV[2])

local existing = redis.call('GET', key)
if existing and tonumber(existing) > now then
    return 0
end

redis.call('SET', key, block_until, 'PX', block_until - now)
return 1
"""


class _ScriptRunner:
    """Loads Lua scripts once and runs them by SHA."""

    def __init__(self, redis_client):
        self.redis = redis_client
        self._shas: Dict[str, str] = {}

    async def _ensure_script(self, script: str) -> str:
        """Load Lua script into Redis if needed."""
        sha = self._shas.get(script)
        if sha is None:
            sha = await self.redis.script_load(script)
            self._shas[script] = sha
        return sha

    async def run(self, script: str, keys: list, args: list):
        sha = await self._ensure_script(script)
        try:
            return await self.redis.evalsha(sha, len(keys), *keys, *args)
        except NoScriptError:
            # Script cache was flushed (restart or failover)
            logger.info("rate_limit_script_reloaded")
            self._shas.pop(script, None)
            sha = await self._ensure_script(script)
            return await self.redis.evalsha(sha, len(keys), *keys, *args)


class RedisCounterStore(BaseCounterStore):
    """
    Sliding-window log counter in Redis sorted sets.

    Uses Lua scripts for atomic increment-and-count.
    """

    name = "redis"

    def __init__(self, redis_client, prefix: str = "ratelimit"):
        """
        Args:
            redis_client: Async Redis client
            prefix: Key namespace
        """
        self.redis = redis_client
        self.prefix = prefix
        self._scripts = _ScriptRunner(redis_client)

    def get_key(self, identifier: str, bucket: str) -> str:
        """Generate the counter key for an identifier and bucket."""
        return f"{self.prefix}:{identifier}:{bucket}"

    async def increment(
        self,
        identifier: str,
        endpoint: str,
        bucket: str,
        rule: RateLimitRule,
        now: datetime,
    ) -> CounterSnapshot:
        now_ms = to_epoch_ms(now)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        try:
            attempts, reset_ms = await self._scripts.run(
                SLIDING_WINDOW_SCRIPT,
                [self.get_key(identifier, bucket)],
                [now_ms, rule.window_ms, rule.requests_allowed, member],
            )
        except RedisError as e:
            raise FastStoreUnavailable(str(e)) from e

        return CounterSnapshot(attempts=int(attempts), reset_at=from_epoch_ms(reset_ms))

    async def reset(self, identifier: str, buckets: Iterable[str]) -> None:
        keys = [self.get_key(identifier, bucket) for bucket in buckets]
        if not keys:
            return
        try:
            await self.redis.delete(*keys)
        except RedisError as e:
            raise FastStoreUnavailable(str(e)) from e

    async def close(self) -> None:
        await self.redis.aclose()


class RedisBlockStore(BaseBlockStore):
    """Block ledger backend storing ``block_until`` (epoch ms) per identifier."""

    name = "redis"

    def __init__(self, redis_client, prefix: str = "ratelimit"):
        self.redis = redis_client
        self.prefix = prefix
        self._scripts = _ScriptRunner(redis_client)

    def get_key(self, identifier: str) -> str:
        """Generate the block key for an identifier."""
        return f"{self.prefix}:block:{identifier}"

    async def get(self, identifier: str, now: datetime) -> Optional[datetime]:
        try:
            value = await self.redis.get(self.get_key(identifier))
        except RedisError as e:
            raise FastStoreUnavailable(str(e)) from e

        if value is None:
            return None
        block_until = from_epoch_ms(float(value))
        if block_until <= now:
            return None
        return block_until

    async def set_if_absent(
        self,
        identifier: str,
        block_until: datetime,
        now: datetime,
        config_key: Optional[str] = None,
    ) -> bool:
        try:
            created = await self._scripts.run(
                BLOCK_SCRIPT,
                [self.get_key(identifier)],
                [to_epoch_ms(now), to_epoch_ms(block_until)],
            )
        except RedisError as e:
            raise FastStoreUnavailable(str(e)) from e
        return bool(int(created))

    async def delete(self, identifier: str) -> None:
        try:
            await self.redis.delete(self.get_key(identifier))
        except RedisError as e:
            raise FastStoreUnavailable(str(e)) from e
