"""Tests for the violation tracker."""

import logging

import pytest

from ratewarden.core.limits import ViolationRecord
from ratewarden.core.limits.memory import InMemoryViolationStore
from ratewarden.core.limits.violations import ViolationTracker

T0 = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def store():
    return InMemoryViolationStore()


@pytest.fixture
def tracker(store):
    return ViolationTracker(store)


class TestRecord:
    @pytest.mark.asyncio
    async def test_first_violation_creates_record(self, tracker):
        record = await tracker.record("1.1.1.1", T0)

        assert record.count == 1
        assert record.first_violation == T0
        assert record.last_violation == T0
        assert record.blocked is False

    @pytest.mark.asyncio
    async def test_increments_and_keeps_first(self, tracker):
        await tracker.record("1.1.1.1", T0)
        record = await tracker.record("1.1.1.1", T0 + 5_000)

        assert record.count == 2
        assert record.first_violation == T0
        assert record.last_violation == T0 + 5_000

    @pytest.mark.asyncio
    async def test_fifth_violation_blocks_for_one_minute(self, tracker):
        for i in range(4):
            record = await tracker.record("1.1.1.1", T0 + i)
            assert record.blocked is False

        record = await tracker.record("1.1.1.1", T0 + 10)

        assert record.count == 5
        assert record.blocked is True
        assert record.blocked_until == T0 + 10 + 60_000

    @pytest.mark.asyncio
    async def test_later_violations_extend_block(self, tracker):
        for i in range(6):
            record = await tracker.record("1.1.1.1", T0)

        assert record.blocked_until == T0 + 120_000

    @pytest.mark.asyncio
    async def test_record_expires_after_a_day(self, tracker):
        await tracker.record("1.1.1.1", T0)

        assert (await tracker.check("1.1.1.1", T0 + DAY_MS - 1)).count == 1
        assert (await tracker.check("1.1.1.1", T0 + DAY_MS)).count == 0

    @pytest.mark.asyncio
    async def test_ttl_restarts_on_each_violation(self, tracker):
        await tracker.record("1.1.1.1", T0)
        await tracker.record("1.1.1.1", T0 + 1_000)

        assert (await tracker.check("1.1.1.1", T0 + DAY_MS)).count == 2


class TestCheck:
    @pytest.mark.asyncio
    async def test_unknown_identity_gets_zero_record(self, tracker, store):
        record = await tracker.check("9.9.9.9", T0)

        assert record.count == 0
        assert record.blocked is False
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_active_block_reported(self, tracker):
        for _ in range(5):
            await tracker.record("1.1.1.1", T0)

        record = await tracker.check("1.1.1.1", T0 + 30_000)

        assert record.is_blocked(T0 + 30_000)
        assert record.count == 5

    @pytest.mark.asyncio
    async def test_elapsed_block_resets_count(self, tracker):
        for _ in range(5):
            await tracker.record("1.1.1.1", T0)

        record = await tracker.check("1.1.1.1", T0 + 60_000)

        assert record.count == 0
        assert record.blocked is False
        assert record.blocked_until is None
        # Reset is persisted
        assert (await tracker.get_stats("1.1.1.1", T0 + 60_001)).count == 0

    @pytest.mark.asyncio
    async def test_reset_after_block_keeps_original_expiry(self, tracker):
        for _ in range(5):
            await tracker.record("1.1.1.1", T0)
        await tracker.check("1.1.1.1", T0 + 60_000)

        assert await tracker.get_stats("1.1.1.1", T0 + DAY_MS) is None

    @pytest.mark.asyncio
    async def test_malformed_record_treated_as_absent(self, tracker, store, caplog):
        await store.save(ViolationRecord(identity="1.1.1.1", count=3), T0, ttl_seconds=60)
        store._records["1.1.1.1"] = ({"identity": "1.1.1.1", "count": "lots"}, T0 + 60_000)

        with caplog.at_level(logging.WARNING):
            record = await tracker.check("1.1.1.1", T0)

        assert record.count == 0
        assert any("malformed violation record" in r.getMessage() for r in caplog.records)


class TestResetAndStats:
    @pytest.mark.asyncio
    async def test_reset_deletes_record(self, tracker):
        await tracker.record("1.1.1.1", T0)

        assert await tracker.reset("1.1.1.1") is True
        assert await tracker.get_stats("1.1.1.1", T0) is None
        assert await tracker.reset("1.1.1.1") is False

    @pytest.mark.asyncio
    async def test_get_stats_reports_elapsed_block_as_lifted(self, tracker):
        for _ in range(5):
            await tracker.record("1.1.1.1", T0)

        stats = await tracker.get_stats("1.1.1.1", T0 + 61_000)

        assert stats.blocked is False
        # Read-only: the stored count is untouched
        assert stats.count == 5

    @pytest.mark.asyncio
    async def test_list_records_sorted_with_stats(self, tracker, store):
        for _ in range(5):
            await tracker.record("blocked", T0)
        for _ in range(3):
            await tracker.record("repeat", T0)
        await tracker.record("once", T0)
        store._records["broken"] = ({"identity": "broken"}, T0 + 60_000)

        summary = await tracker.list_records(T0 + 1_000)

        assert [r.identity for r in summary.records] == ["blocked", "repeat", "once"]
        assert summary.total == 3
        assert summary.active_blocks == 1
        assert summary.high_violators == 2
