"""Violation tracker: per-principal abuse history with escalating blocks.

A record is created on the first limit-exceed, incremented on each later one,
reset once an active block elapses, and expires 24h after the last violation.
The record is global across endpoint classes.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ratewarden.core.limits import ViolationRecord, ViolationStore
from ratewarden.core.limits.backoff import BLOCK_THRESHOLD, block_duration_ms
from ratewarden.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_VIOLATION_TTL_SECONDS = 24 * 60 * 60

# Count at which an offender is listed as a "high violator" on the dashboard
HIGH_VIOLATOR_THRESHOLD = 3


@dataclass
class ViolationSummary:
    """Dashboard view over every live violation record."""

    records: list[ViolationRecord] = field(default_factory=list)
    total: int = 0
    active_blocks: int = 0
    high_violators: int = 0


class ViolationTracker:
    """Evolves violation records stored in a ViolationStore.

    Store failures (LimitStoreUnavailable) propagate to the caller; malformed
    records are logged and treated as absent.
    """

    def __init__(self, store: ViolationStore, ttl_seconds: int = DEFAULT_VIOLATION_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def _load(self, identity: str, now_ms: int) -> ViolationRecord | None:
        try:
            raw = await self.store.load(identity, now_ms)
            if raw is None:
                return None
            return ViolationRecord.from_dict(raw)
        except ValueError as exc:
            logger.warning(
                "Ignoring malformed violation record",
                data={"identity": identity, "error": str(exc)},
            )
            return None

    async def check(self, identity: str, now_ms: int) -> ViolationRecord:
        """Return the current record, clearing a block that has elapsed.

        A principal with no history gets a zero record (not persisted).
        """
        record = await self._load(identity, now_ms)
        if record is None:
            return ViolationRecord(identity=identity)

        if record.blocked and (record.blocked_until is None or now_ms >= record.blocked_until):
            record.count = 0
            record.blocked = False
            record.blocked_until = None
            # Keep the existing expiry: the 24h clock runs from the last violation
            await self.store.save(record, now_ms, ttl_seconds=None)
            logger.info("Violation block elapsed, record reset", data={"identity": identity})

        return record

    async def record(self, identity: str, now_ms: int) -> ViolationRecord:
        """Register one limit-exceed and escalate to a block at the threshold."""
        record = await self._load(identity, now_ms) or ViolationRecord(identity=identity)

        record.count += 1
        if record.first_violation is None or record.count == 1:
            record.first_violation = now_ms
        record.last_violation = now_ms

        if record.count >= BLOCK_THRESHOLD:
            record.blocked = True
            record.blocked_until = now_ms + block_duration_ms(record.count)
            logger.warning(
                "Principal blocked after repeated rate limit violations",
                data={
                    "identity": identity,
                    "violations": record.count,
                    "blocked_until": record.blocked_until,
                },
            )

        await self.store.save(record, now_ms, ttl_seconds=self.ttl_seconds)
        return record

    async def reset(self, identity: str) -> bool:
        """Administrative hard reset. Returns True if a record existed."""
        return await self.store.delete(identity)

    async def get_stats(self, identity: str, now_ms: int) -> ViolationRecord | None:
        """Read-only view of a record; an elapsed block is reported as lifted."""
        record = await self._load(identity, now_ms)
        if record is None:
            return None
        if record.blocked and not record.is_blocked(now_ms):
            record.blocked = False
        return record

    async def list_records(self, now_ms: int) -> ViolationSummary:
        """Collect every live record, highest violation count first."""
        records: list[ViolationRecord] = []
        async for identity, raw in self.store.scan(now_ms):
            if raw is None:
                logger.warning("Skipping undecodable violation record", data={"identity": identity})
                continue
            try:
                record = ViolationRecord.from_dict(raw)
            except ValueError as exc:
                logger.warning(
                    "Skipping malformed violation record",
                    data={"identity": identity, "error": str(exc)},
                )
                continue
            if record.blocked and not record.is_blocked(now_ms):
                record.blocked = False
            records.append(record)

        records.sort(key=lambda r: r.count, reverse=True)
        return ViolationSummary(
            records=records,
            total=len(records),
            active_blocks=sum(1 for r in records if r.blocked),
            high_violators=sum(1 for r in records if r.count >= HIGH_VIOLATOR_THRESHOLD),
        )
