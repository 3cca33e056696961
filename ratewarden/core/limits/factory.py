"""Factory functions and Redis implementations for limit stores.

This module returns the appropriate store implementations based on the
configured backend (auto|memory|redis). The in-process stores are always
built too: they are the fallback the decision engine uses for a single
decision when the shared store is unreachable.

Usage:
    from ratewarden.core.limits.factory import get_stores_from_settings

    stores = get_stores_from_settings(settings)
    ...
    await stores.aclose()
"""

from __future__ import annotations

import asyncio
import json
import re
import secrets
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, TypeVar

import redis.asyncio as redis
from redis.exceptions import NoScriptError, RedisError

from ratewarden.config.settings import Settings
from ratewarden.core.limits import (
    LimitStoreUnavailable,
    ViolationRecord,
    ViolationStore,
    WindowCounterStore,
    WindowResult,
)
from ratewarden.core.limits.memory import (
    DEFAULT_MAX_KEYS,
    InMemoryViolationStore,
    InMemoryWindowCounterStore,
    principal_of,
)
from ratewarden.core.logging import get_logger, redact_url

logger = get_logger(__name__)

T = TypeVar("T")

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


def _escape_glob(value: str) -> str:
    """Escape a literal for use inside a Redis SCAN MATCH pattern."""
    return _GLOB_SPECIALS.sub(r"\\\1", value)


class _RedisBackedStore:
    """Shared plumbing: bounded round trips with errors mapped to LimitStoreUnavailable."""

    def __init__(self, client: redis.Redis, prefix: str, timeout_seconds: float):
        self._client = client
        self._prefix = prefix
        self._timeout = timeout_seconds

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except NoScriptError:
            raise
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise LimitStoreUnavailable(operation, exc) from exc


class _RedisWindowCounterStore(_RedisBackedStore, WindowCounterStore):
    """Redis sliding window counter with atomic slot admission.

    Uses a Lua script so purge, count and add run as one server-side step:
    - ZREMRANGEBYSCORE drops members at or before now - window
    - ZCARD counts what is left
    - ZADD + PEXPIRE only when under limit

    Uses ZSET per key:
    - Members: unique event ids
    - Scores: admission timestamp (milliseconds since epoch)

    Keys look like "ratewarden:window:API:STUDENT:10.0.0.1:42".
    """

    _ADMIT_SCRIPT = """
    local key = KEYS[1]
    local now_ms = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Slide the window
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)

    local count = redis.call('ZCARD', key)
    local admitted = 0
    if count < limit then
        redis.call('ZADD', key, now_ms, member)
        redis.call('PEXPIRE', key, window_ms)
        count = count + 1
        admitted = 1
    end

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    if oldest[2] then
        return {admitted, count, oldest[2]}
    end
    return {admitted, count}
    """

    def __init__(self, client: redis.Redis, prefix: str = "ratewarden:", timeout_seconds: float = 0.5):
        super().__init__(client, prefix, timeout_seconds)
        self._window_prefix = f"{prefix}window:"
        self._admit_sha: str | None = None

    async def _load_script(self) -> str:
        if self._admit_sha is None:
            self._admit_sha = await self._call("script_load", self._client.script_load(self._ADMIT_SCRIPT))
        return self._admit_sha

    async def admit(self, key: str, window_seconds: int, limit: int, now_ms: int) -> WindowResult:
        window_ms = window_seconds * 1000
        member = f"{now_ms}-{secrets.token_hex(4)}"
        args = (f"{self._window_prefix}{key}", str(now_ms), str(window_ms), str(limit), member)

        sha = await self._load_script()
        try:
            result = await self._call("admit", self._client.evalsha(sha, 1, *args))
        except NoScriptError:
            # Script cache was flushed, reload it
            self._admit_sha = None
            sha = await self._load_script()
            try:
                result = await self._call("admit", self._client.evalsha(sha, 1, *args))
            except NoScriptError as exc:
                raise LimitStoreUnavailable("admit", exc) from exc

        admitted = bool(int(result[0]))
        count = int(result[1])
        oldest_ms = int(float(result[2])) if len(result) > 2 and result[2] is not None else None
        return WindowResult(admitted=admitted, count=count, oldest_ms=oldest_ms)

    async def _matching_keys(self, principal: str) -> list[str]:
        pattern = f"{_escape_glob(self._window_prefix)}*:*:{_escape_glob(principal)}"
        keys = []
        async for key in self._client.scan_iter(match=pattern):
            if principal_of(key[len(self._window_prefix):]) == principal:
                keys.append(key)
        return keys

    async def clear(self, principal: str) -> int:
        keys = await self._call("scan", self._matching_keys(principal))
        if not keys:
            return 0
        return int(await self._call("delete", self._client.delete(*keys)))


class _RedisViolationStore(_RedisBackedStore, ViolationStore):
    """Violation records stored as JSON strings with native key expiry.

    Keys look like "ratewarden:violations:10.0.0.1:42".
    """

    def __init__(self, client: redis.Redis, prefix: str = "ratewarden:", timeout_seconds: float = 0.5):
        super().__init__(client, prefix, timeout_seconds)
        self._violation_prefix = f"{prefix}violations:"

    def _key(self, identity: str) -> str:
        return f"{self._violation_prefix}{identity}"

    @staticmethod
    def _decode(payload: str) -> dict[str, Any]:
        """Raises ValueError (incl. JSONDecodeError) on a corrupt payload."""
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("violation payload is not an object")
        return data

    async def load(self, identity: str, now_ms: int) -> dict[str, Any] | None:
        payload = await self._call("get", self._client.get(self._key(identity)))
        if payload is None:
            return None
        return self._decode(payload)

    async def save(
        self,
        record: ViolationRecord,
        now_ms: int,
        ttl_seconds: int | None,
    ) -> None:
        payload = json.dumps(record.to_dict())
        if ttl_seconds is None:
            await self._call("set", self._client.set(self._key(record.identity), payload, keepttl=True))
        else:
            await self._call("set", self._client.set(self._key(record.identity), payload, ex=ttl_seconds))

    async def delete(self, identity: str) -> bool:
        removed = await self._call("delete", self._client.delete(self._key(identity)))
        return bool(removed)

    async def _collect(self) -> list[tuple[str, str | None]]:
        keys = [key async for key in self._client.scan_iter(match=f"{_escape_glob(self._violation_prefix)}*")]
        if not keys:
            return []
        payloads = await self._client.mget(keys)
        return list(zip(keys, payloads))

    async def scan(self, now_ms: int) -> AsyncIterator[tuple[str, dict[str, Any] | None]]:
        # Dashboard listing gets a longer budget than the per-request path
        try:
            pairs = await asyncio.wait_for(self._collect(), timeout=self._timeout * 10)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise LimitStoreUnavailable("scan", exc) from exc

        for key, payload in pairs:
            if payload is None:
                # Expired between SCAN and MGET
                continue
            identity = key[len(self._violation_prefix):]
            try:
                yield identity, self._decode(payload)
            except ValueError:
                yield identity, None


@dataclass
class LimitStores:
    """Stores wired for one process.

    ``window_store``/``violation_store`` are the source of truth; the local
    stores are always present and double as the fallback.
    """

    backend: str
    window_store: WindowCounterStore
    violation_store: ViolationStore
    local_window_store: InMemoryWindowCounterStore
    local_violation_store: InMemoryViolationStore
    client: redis.Redis | None = None

    @property
    def is_distributed(self) -> bool:
        return self.client is not None

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def get_limit_stores(
    backend: str = "memory",
    *,
    redis_url: str = "",
    prefix: str = "ratewarden:",
    timeout_seconds: float = 0.5,
    violation_ttl_seconds: int = 24 * 60 * 60,
    local_max_keys: int = DEFAULT_MAX_KEYS,
) -> LimitStores:
    """Build the stores for a backend.

    Args:
        backend: "memory" or "redis"
        redis_url: Redis connection URL (required for redis backend)
        prefix: Key prefix for every shared-store key
        timeout_seconds: Bound on every shared-store round trip
        violation_ttl_seconds: Default expiry for in-process violation records
        local_max_keys: Entry cap for each in-process store

    Raises:
        ValueError: If redis backend selected but redis_url not provided, or
            the backend is unknown
    """
    local_windows = InMemoryWindowCounterStore(max_keys=local_max_keys)
    local_violations = InMemoryViolationStore(
        default_ttl_seconds=violation_ttl_seconds,
        max_keys=local_max_keys,
    )

    if backend == "memory":
        return LimitStores(
            backend="memory",
            window_store=local_windows,
            violation_store=local_violations,
            local_window_store=local_windows,
            local_violation_store=local_violations,
        )

    if backend == "redis":
        if not redis_url:
            raise ValueError("redis_url is required when limits_backend=redis")
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        logger.info("Using shared limit store", data={"redis_url": redact_url(redis_url)})
        return LimitStores(
            backend="redis",
            window_store=_RedisWindowCounterStore(client, prefix=prefix, timeout_seconds=timeout_seconds),
            violation_store=_RedisViolationStore(client, prefix=prefix, timeout_seconds=timeout_seconds),
            local_window_store=local_windows,
            local_violation_store=local_violations,
            client=client,
        )

    raise ValueError(f"Unknown limits_backend: {backend}. Use 'memory' or 'redis'")


def get_stores_from_settings(settings: Settings) -> LimitStores:
    """Get limit stores from settings.

    This is a convenience function for app startup.
    """
    return get_limit_stores(
        settings.effective_limits_backend,
        redis_url=settings.redis_url,
        prefix=settings.limits_key_prefix,
        timeout_seconds=settings.limits_redis_timeout_seconds,
        violation_ttl_seconds=settings.violation_ttl_seconds,
        local_max_keys=settings.limits_local_max_keys,
    )
