"""Tests for the decision engine.

Covers the per-request flow (violation check, backoff, window admission,
escalation), the fail-open path and administrative reset.
"""

import logging

import pytest

from ratewarden.core.limits import EndpointClass, Identity, LimitStoreUnavailable, Role
from ratewarden.core.limits.engine import DecisionEngine, retry_after_seconds, window_key
from ratewarden.core.limits.memory import InMemoryViolationStore, InMemoryWindowCounterStore
from ratewarden.core.limits.policy import TieredLimitPolicy
from ratewarden.core.limits.violations import ViolationTracker

ANON = Identity(ip="203.0.113.7")
FAIL_OPEN_MESSAGE = "Rate limit store unavailable, failing open"


class UnreachableWindowStore:
    """Window store whose backend is always down."""

    def __init__(self):
        self.calls = 0

    async def admit(self, key, window_seconds, limit, now_ms):
        self.calls += 1
        raise LimitStoreUnavailable("admit", ConnectionError("connection refused"))

    async def clear(self, principal):
        raise LimitStoreUnavailable("clear", ConnectionError("connection refused"))


class UnreachableViolationStore:
    async def load(self, identity, now_ms):
        raise LimitStoreUnavailable("get", ConnectionError("connection refused"))

    async def save(self, record, now_ms, ttl_seconds):
        raise LimitStoreUnavailable("set", ConnectionError("connection refused"))

    async def delete(self, identity):
        raise LimitStoreUnavailable("delete", ConnectionError("connection refused"))

    async def scan(self, now_ms):
        raise LimitStoreUnavailable("scan", ConnectionError("connection refused"))
        yield  # pragma: no cover


@pytest.fixture
def window_store():
    return InMemoryWindowCounterStore()


@pytest.fixture
def violation_store():
    return InMemoryViolationStore()


@pytest.fixture
def engine(window_store, violation_store, clock):
    return DecisionEngine(
        TieredLimitPolicy(),
        window_store,
        ViolationTracker(violation_store),
        clock=clock,
    )


async def _overflow(engine, clock, identity, category):
    """Send requests one second apart until one is denied."""
    while True:
        decision = await engine.evaluate(identity, category)
        if not decision.allowed:
            return decision
        clock.advance(1)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_auth_unauthenticated_scenario(self, engine, clock):
        """5 logins in 10s are admitted; the 6th is rejected as violation 1."""
        remaining = []
        for _ in range(5):
            decision = await engine.evaluate(ANON, EndpointClass.AUTH)
            assert decision.allowed is True
            assert decision.limit == 5
            remaining.append(decision.remaining)
            clock.advance(2)

        assert remaining == [4, 3, 2, 1, 0]

        start = clock.now - 10_000
        denied = await engine.evaluate(ANON, EndpointClass.AUTH)

        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.violations == 1
        assert denied.backoff_multiplier == 1
        assert denied.reset_at == start + 60_000
        assert denied.blocked is False
        assert denied.retry_after == 50

    @pytest.mark.asyncio
    async def test_allowed_decision_reset_is_now_plus_window(self, engine, clock):
        decision = await engine.evaluate(ANON, EndpointClass.READ)

        assert decision.reset_at == clock.now + 60_000
        assert decision.category is EndpointClass.READ
        assert decision.role is Role.UNAUTHENTICATED
        assert decision.degraded is False

    @pytest.mark.asyncio
    async def test_window_reset(self, engine, clock):
        """After a quiet window, a fresh request has remaining = limit - 1."""
        for _ in range(5):
            await engine.evaluate(ANON, EndpointClass.AUTH)
        clock.advance(61)

        decision = await engine.evaluate(ANON, EndpointClass.AUTH)

        assert decision.allowed is True
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_role_differentiation(self, engine, clock):
        guardian = Identity(ip="198.51.100.1", role=Role.GUARDIAN, user_id="g-1")
        anonymous = Identity(ip="198.51.100.2")

        admitted = {"guardian": 0, "anonymous": 0}
        for _ in range(200):
            if (await engine.evaluate(guardian, EndpointClass.API)).allowed:
                admitted["guardian"] += 1
            if (await engine.evaluate(anonymous, EndpointClass.API)).allowed:
                admitted["anonymous"] += 1
            clock.advance(0.1)

        assert admitted == {"guardian": 150, "anonymous": 30}

    @pytest.mark.asyncio
    async def test_windows_are_per_category(self, engine):
        for _ in range(5):
            await engine.evaluate(ANON, EndpointClass.AUTH)

        assert (await engine.evaluate(ANON, EndpointClass.AUTH)).allowed is False
        assert (await engine.evaluate(ANON, EndpointClass.API)).allowed is True

    @pytest.mark.asyncio
    async def test_backoff_shrinks_limit(self, engine, clock):
        for _ in range(2):
            await _overflow(engine, clock, ANON, EndpointClass.AUTH)
            clock.advance(61)

        decision = await engine.evaluate(ANON, EndpointClass.AUTH)

        assert decision.violations == 2
        assert decision.backoff_multiplier == 2
        assert decision.limit == 2

    @pytest.mark.asyncio
    async def test_whitelisted_ip_is_never_counted(self, window_store, violation_store, clock):
        engine = DecisionEngine(
            TieredLimitPolicy(),
            window_store,
            ViolationTracker(violation_store),
            clock=clock,
            whitelist=["203.0.113.7"],
        )

        decisions = [await engine.evaluate(ANON, EndpointClass.AUTH) for _ in range(20)]

        assert all(d.allowed for d in decisions)
        assert len(window_store) == 0
        assert len(violation_store) == 0


class TestBlocking:
    @pytest.mark.asyncio
    async def test_five_separate_overflows_block(self, engine, clock):
        for expected in range(1, 5):
            denied = await _overflow(engine, clock, ANON, EndpointClass.AUTH)
            assert denied.violations == expected
            assert denied.blocked is False
            clock.advance(61)

        denied = await _overflow(engine, clock, ANON, EndpointClass.AUTH)

        assert denied.violations == 5
        assert denied.blocked is True
        assert denied.blocked_until == clock.now + 60_000
        assert denied.retry_after == 60

    @pytest.mark.asyncio
    async def test_blocked_identity_short_circuits(self, engine, clock, window_store):
        for _ in range(5):
            await engine.evaluate(ANON, EndpointClass.AUTH)
        for _ in range(5):
            await engine.evaluate(ANON, EndpointClass.AUTH)
        clock.advance(10)

        decision = await engine.evaluate(ANON, EndpointClass.READ)

        assert decision.allowed is False
        assert decision.blocked is True
        # No new violation while blocked
        assert decision.violations == 5
        assert decision.limit == 50
        assert decision.backoff_multiplier == 16
        assert decision.reset_at == decision.blocked_until
        assert decision.retry_after == 50
        assert len(window_store) == 1

    @pytest.mark.asyncio
    async def test_block_recovery(self, engine, clock):
        for _ in range(10):
            denied = await engine.evaluate(ANON, EndpointClass.AUTH)
        assert denied.blocked is True

        clock.now = denied.blocked_until
        decision = await engine.evaluate(ANON, EndpointClass.AUTH)

        assert decision.allowed is True
        assert decision.violations == 0
        assert decision.backoff_multiplier == 1
        assert decision.limit == 5

    @pytest.mark.asyncio
    async def test_admin_reset_restores_fresh_identity(self, engine, clock):
        for _ in range(10):
            await engine.evaluate(ANON, EndpointClass.AUTH)

        assert await engine.reset(ANON.principal) is True
        decision = await engine.evaluate(ANON, EndpointClass.AUTH)

        assert decision.allowed is True
        assert decision.remaining == 4
        assert decision.violations == 0
        assert await engine.get_violation_stats(ANON.principal) is None

    @pytest.mark.asyncio
    async def test_violations_are_global_across_categories(self, engine):
        for _ in range(6):
            await engine.evaluate(ANON, EndpointClass.AUTH)
        for _ in range(11):
            await engine.evaluate(ANON, EndpointClass.MODERATION)

        stats = await engine.get_violation_stats(ANON.principal)

        assert stats.count == 2

    @pytest.mark.asyncio
    async def test_users_behind_one_ip_are_separate(self, engine):
        alice = Identity(ip="10.0.0.1", role=Role.STUDENT, user_id="alice")
        bob = Identity(ip="10.0.0.1", role=Role.STUDENT, user_id="bob")

        for _ in range(11):
            await engine.evaluate(alice, EndpointClass.AUTH)

        assert (await engine.evaluate(bob, EndpointClass.AUTH)).allowed is True
        assert (await engine.get_violation_stats(alice.principal)).count == 1
        assert await engine.get_violation_stats(bob.principal) is None


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_admits_and_warns_once_per_failure(self, clock, caplog):
        engine = DecisionEngine(
            TieredLimitPolicy(),
            UnreachableWindowStore(),
            ViolationTracker(UnreachableViolationStore()),
            clock=clock,
        )

        with caplog.at_level(logging.WARNING, logger="ratewarden.core.limits.engine"):
            decisions = [await engine.evaluate(ANON, EndpointClass.AUTH) for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert all(d.degraded for d in decisions)
        assert decisions[0].remaining == 4
        warnings = [r for r in caplog.records if r.getMessage() == FAIL_OPEN_MESSAGE]
        assert len(warnings) == 3

    @pytest.mark.asyncio
    async def test_local_fallback_still_limits(self, clock):
        engine = DecisionEngine(
            TieredLimitPolicy(),
            UnreachableWindowStore(),
            ViolationTracker(UnreachableViolationStore()),
            fallback_window_store=InMemoryWindowCounterStore(),
            fallback_tracker=ViolationTracker(InMemoryViolationStore()),
            clock=clock,
        )

        decisions = [await engine.evaluate(ANON, EndpointClass.AUTH) for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert all(d.degraded for d in decisions)
        assert decisions[-1].violations == 1

    @pytest.mark.asyncio
    async def test_window_failure_after_check_falls_back(self, violation_store, clock):
        window_store = UnreachableWindowStore()
        engine = DecisionEngine(
            TieredLimitPolicy(),
            window_store,
            ViolationTracker(violation_store),
            clock=clock,
        )

        decision = await engine.evaluate(ANON, EndpointClass.API)

        assert decision.allowed is True
        assert decision.degraded is True
        assert window_store.calls == 1


def test_window_key_layout():
    identity = Identity(ip="10.0.0.1", role=Role.STUDENT, user_id="42")
    assert window_key(identity, EndpointClass.API) == "API:STUDENT:10.0.0.1:42"


def test_retry_after_rounds_up_and_is_at_least_one():
    assert retry_after_seconds(1_500, 0) == 2
    assert retry_after_seconds(1_000, 1_000) == 1
