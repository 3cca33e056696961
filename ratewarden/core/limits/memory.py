"""In-memory window counter and violation store implementations.

These are per-process and serve as the fallback when the shared store is
unconfigured or unreachable. They are NOT shared across workers; use the
Redis implementations for multi-worker deployments.

Both stores hold at most ``max_keys`` entries and evict the least recently
used one when full, so a flood of distinct principals cannot grow them
without bound between sweeps.
"""

from __future__ import annotations

from asyncio import Lock
from collections import OrderedDict, deque
from typing import Any, AsyncIterator

from ratewarden.core.limits import (
    ViolationRecord,
    ViolationStore,
    WindowCounterStore,
    WindowResult,
)


def principal_of(key: str) -> str:
    """Extract the principal from a "CATEGORY:ROLE:principal" counter key."""
    parts = key.split(":", 2)
    return parts[2] if len(parts) == 3 else key

DEFAULT_MAX_KEYS = 10_000


class InMemoryWindowCounterStore(WindowCounterStore):
    """In-memory sliding window counter.

    Uses a deque of admission timestamps per key; expired entries are purged
    on each access and by the periodic sweep.
    """

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS):
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")
        self._max_keys = max_keys
        # key -> (admission timestamps in epoch ms, window length in ms), oldest use first
        self._buckets: OrderedDict[str, tuple[deque[int], int]] = OrderedDict()
        self._lock = Lock()

    async def admit(self, key: str, window_seconds: int, limit: int, now_ms: int) -> WindowResult:
        window_ms = window_seconds * 1000
        cutoff = now_ms - window_ms

        async with self._lock:
            entry = self._buckets.get(key)
            bucket: deque[int] = entry[0] if entry is not None else deque()
            self._buckets[key] = (bucket, window_ms)
            self._buckets.move_to_end(key)
            while len(self._buckets) > self._max_keys:
                self._buckets.popitem(last=False)

            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= limit:
                return WindowResult(admitted=False, count=len(bucket), oldest_ms=bucket[0] if bucket else None)

            bucket.append(now_ms)
            return WindowResult(admitted=True, count=len(bucket), oldest_ms=bucket[0])

    async def clear(self, principal: str) -> int:
        async with self._lock:
            doomed = [key for key in self._buckets if principal_of(key) == principal]
            for key in doomed:
                del self._buckets[key]
            return len(doomed)

    async def sweep(self, now_ms: int) -> int:
        """Drop keys whose window has fully expired. Returns keys removed."""
        async with self._lock:
            doomed = []
            for key, (bucket, window_ms) in self._buckets.items():
                cutoff = now_ms - window_ms
                while bucket and bucket[0] <= cutoff:
                    bucket.popleft()
                if not bucket:
                    doomed.append(key)
            for key in doomed:
                del self._buckets[key]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._buckets)


class InMemoryViolationStore(ViolationStore):
    """In-memory violation records with per-record expiry."""

    def __init__(self, default_ttl_seconds: int = 24 * 60 * 60, max_keys: int = DEFAULT_MAX_KEYS):
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")
        self._default_ttl_ms = default_ttl_seconds * 1000
        self._max_keys = max_keys
        # identity -> (raw record, expires_at epoch ms), oldest use first
        self._records: OrderedDict[str, tuple[dict[str, Any], int]] = OrderedDict()
        self._lock = Lock()

    async def load(self, identity: str, now_ms: int) -> dict[str, Any] | None:
        async with self._lock:
            entry = self._records.get(identity)
            if entry is None:
                return None
            raw, expires_at = entry
            if expires_at <= now_ms:
                del self._records[identity]
                return None
            self._records.move_to_end(identity)
            return dict(raw)

    async def save(
        self,
        record: ViolationRecord,
        now_ms: int,
        ttl_seconds: int | None,
    ) -> None:
        async with self._lock:
            if ttl_seconds is None:
                existing = self._records.get(record.identity)
                expires_at = existing[1] if existing else now_ms + self._default_ttl_ms
            else:
                expires_at = now_ms + ttl_seconds * 1000
            self._records[record.identity] = (record.to_dict(), expires_at)
            self._records.move_to_end(record.identity)
            while len(self._records) > self._max_keys:
                self._records.popitem(last=False)

    async def delete(self, identity: str) -> bool:
        async with self._lock:
            return self._records.pop(identity, None) is not None

    async def scan(self, now_ms: int) -> AsyncIterator[tuple[str, dict[str, Any] | None]]:
        async with self._lock:
            snapshot = [
                (identity, dict(raw))
                for identity, (raw, expires_at) in self._records.items()
                if expires_at > now_ms
            ]
        for identity, raw in snapshot:
            yield identity, raw

    async def sweep(self, now_ms: int) -> int:
        """Drop expired records. Returns records removed."""
        async with self._lock:
            doomed = [identity for identity, (_, expires_at) in self._records.items() if expires_at <= now_ms]
            for identity in doomed:
                del self._records[identity]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._records)
