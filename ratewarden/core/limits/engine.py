"""Decision engine: the single entry point for rate limit decisions.

Per request it checks the principal's violation state, resolves the tiered
policy, applies backoff, consults the sliding window and escalates on
rejection. It never fails closed on infrastructure errors: when the shared
store is unreachable the decision is served from the in-process stores (or
admitted outright) and a warning is logged.
"""

from __future__ import annotations

import math
import time
from dataclasses import replace
from typing import Callable, Iterable

from ratewarden.core.limits import (
    Decision,
    EndpointClass,
    Identity,
    LimitPolicy,
    LimitStoreUnavailable,
    ViolationRecord,
    WindowCounterStore,
)
from ratewarden.core.limits.backoff import backoff_multiplier, effective_limit
from ratewarden.core.limits.policy import TieredLimitPolicy
from ratewarden.core.limits.violations import ViolationSummary, ViolationTracker
from ratewarden.core.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], int]


def epoch_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def retry_after_seconds(reset_at_ms: int, now_ms: int) -> int:
    """Whole seconds until ``reset_at_ms``, at least 1."""
    return max(1, math.ceil((reset_at_ms - now_ms) / 1000))


def window_key(identity: Identity, category: EndpointClass) -> str:
    return f"{category.value}:{identity.role.value}:{identity.principal}"


class DecisionEngine:
    """Orchestrates policy, window counter and violation tracker.

    Args:
        policy: Tiered limit policy (validated at construction).
        window_store: Primary window counter store.
        tracker: Violation tracker over the primary violation store.
        fallback_window_store: In-process store used for one decision when the
            primary raises LimitStoreUnavailable. None = admit without counting.
        fallback_tracker: In-process tracker paired with the fallback store.
        clock: Returns "now" in epoch milliseconds.
        whitelist: Client IPs that bypass limiting entirely.
    """

    def __init__(
        self,
        policy: TieredLimitPolicy,
        window_store: WindowCounterStore,
        tracker: ViolationTracker,
        *,
        fallback_window_store: WindowCounterStore | None = None,
        fallback_tracker: ViolationTracker | None = None,
        clock: Clock = epoch_ms,
        whitelist: Iterable[str] = (),
    ):
        self.policy = policy
        self.window_store = window_store
        self.tracker = tracker
        self.fallback_window_store = fallback_window_store
        self.fallback_tracker = fallback_tracker
        self.clock = clock
        self.whitelist = frozenset(whitelist)

    async def evaluate(self, identity: Identity, category: EndpointClass) -> Decision:
        """Decide whether one request from ``identity`` may proceed."""
        now_ms = self.clock()
        policy = self.policy.resolve(category, identity.role)

        if identity.ip in self.whitelist:
            return Decision(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit,
                reset_at=now_ms + policy.window_ms,
                violations=0,
                backoff_multiplier=1,
                category=category,
                role=identity.role,
            )

        try:
            return await self._decide(identity, policy, now_ms, self.window_store, self.tracker)
        except LimitStoreUnavailable as exc:
            logger.warning(
                "Rate limit store unavailable, failing open",
                data={
                    "operation": exc.operation,
                    "error": str(exc.cause or exc),
                    "principal": identity.principal,
                    "category": category.value,
                    "fallback": self.fallback_window_store is not None,
                },
            )

        if self.fallback_window_store is not None and self.fallback_tracker is not None:
            decision = await self._decide(
                identity, policy, now_ms, self.fallback_window_store, self.fallback_tracker
            )
        else:
            limit = effective_limit(policy.limit, 0)
            decision = Decision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - 1),
                reset_at=now_ms + policy.window_ms,
                violations=0,
                backoff_multiplier=1,
                category=category,
                role=identity.role,
            )
        return replace(decision, degraded=True)

    async def _decide(
        self,
        identity: Identity,
        policy: LimitPolicy,
        now_ms: int,
        window_store: WindowCounterStore,
        tracker: ViolationTracker,
    ) -> Decision:
        principal = identity.principal
        record = await tracker.check(principal, now_ms)
        multiplier = backoff_multiplier(record.count)
        limit = effective_limit(policy.limit, record.count)

        if record.is_blocked(now_ms):
            # Blocked decisions report the unshrunk base limit
            return Decision(
                allowed=False,
                limit=policy.limit,
                remaining=0,
                reset_at=record.blocked_until,
                violations=record.count,
                backoff_multiplier=multiplier,
                category=policy.category,
                role=policy.role,
                blocked_until=record.blocked_until,
                retry_after=retry_after_seconds(record.blocked_until, now_ms),
            )

        result = await window_store.admit(
            window_key(identity, policy.category),
            policy.window_seconds,
            limit,
            now_ms,
        )

        if not result.admitted:
            updated = await tracker.record(principal, now_ms)
            oldest = result.oldest_ms if result.oldest_ms is not None else now_ms
            reset_at = oldest + policy.window_ms
            blocked_until = updated.blocked_until if updated.is_blocked(now_ms) else None
            logger.warning(
                "Rate limit exceeded",
                data={
                    "principal": principal,
                    "category": policy.category.value,
                    "role": policy.role.value,
                    "limit": limit,
                    "violations": updated.count,
                },
            )
            return Decision(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                violations=updated.count,
                backoff_multiplier=multiplier,
                category=policy.category,
                role=policy.role,
                blocked_until=blocked_until,
                retry_after=retry_after_seconds(blocked_until or reset_at, now_ms),
            )

        return Decision(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - result.count),
            reset_at=now_ms + policy.window_ms,
            violations=record.count,
            backoff_multiplier=multiplier,
            category=policy.category,
            role=policy.role,
        )

    async def reset(self, principal: str) -> bool:
        """Administrative reset: forget violations and open windows.

        Returns True if a violation record existed in the primary store.
        """
        existed = await self.tracker.reset(principal)
        await self.window_store.clear(principal)
        if self.fallback_tracker is not None and self.fallback_tracker is not self.tracker:
            await self.fallback_tracker.reset(principal)
        if self.fallback_window_store is not None and self.fallback_window_store is not self.window_store:
            await self.fallback_window_store.clear(principal)
        logger.info("Rate limit state reset", data={"principal": principal, "had_violations": existed})
        return existed

    async def get_violation_stats(self, principal: str) -> ViolationRecord | None:
        """Read-only view of a principal's violation record."""
        return await self.tracker.get_stats(principal, self.clock())

    async def list_violations(self) -> ViolationSummary:
        return await self.tracker.list_records(self.clock())
