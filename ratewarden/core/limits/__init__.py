"""Rate limit store abstractions and shared types.

This module defines the value types that flow through the limiter and the
pluggable backends behind it. The interfaces allow swapping between the
in-process store (single worker, fallback) and the distributed store (Redis)
without changing the decision logic.

Usage:
    from ratewarden.core.limits.factory import get_stores_from_settings

    # In app lifespan:
    stores = get_stores_from_settings(settings)
    engine = DecisionEngine(
        TieredLimitPolicy(),
        stores.window_store,
        ViolationTracker(stores.violation_store),
    )

    # In handlers:
    decision = await engine.evaluate(identity, EndpointClass.API)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, AsyncIterator, Protocol

__all__ = [
    "Role",
    "EndpointClass",
    "Identity",
    "LimitPolicy",
    "WindowResult",
    "ViolationRecord",
    "Decision",
    "LimitStoreUnavailable",
    "WindowCounterStore",
    "ViolationStore",
]


class Role(str, Enum):
    """Caller role as reported by the auth layer."""

    STUDENT = "STUDENT"
    GUARDIAN = "GUARDIAN"
    ADMIN = "ADMIN"
    UNAUTHENTICATED = "UNAUTHENTICATED"


class EndpointClass(str, Enum):
    """Category of API traffic sharing one limit policy."""

    API = "API"
    AUTH = "AUTH"
    UPLOAD = "UPLOAD"
    READ = "READ"
    MODERATION = "MODERATION"


class LimitStoreUnavailable(Exception):
    """Raised by a backend when the underlying store cannot be reached.

    The decision engine treats this as an infrastructure failure and fails open.
    """

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Limit store unavailable during {operation}{detail}")


@dataclass(frozen=True)
class Identity:
    """Who a decision is made for.

    Attributes:
        ip: Client IP address (after trusted-proxy resolution).
        user_id: Authenticated user id, if any.
        role: Caller role.
    """

    ip: str
    role: Role = Role.UNAUTHENTICATED
    user_id: str | None = None

    @property
    def principal(self) -> str:
        """Stable identifier used for counters and violation records."""
        if self.user_id:
            return f"{self.ip}:{self.user_id}"
        return self.ip


@dataclass(frozen=True)
class LimitPolicy:
    """Base budget for one (endpoint class, role) pair."""

    category: EndpointClass
    role: Role
    limit: int
    window_seconds: int

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


@dataclass(frozen=True)
class WindowResult:
    """Result of a sliding window admission attempt.

    Attributes:
        admitted: Whether the attempt was recorded within budget.
        count: Events in the window after this attempt (includes it if admitted).
        oldest_ms: Score of the oldest event still in the window, if any.
    """

    admitted: bool
    count: int
    oldest_ms: int | None


@dataclass
class ViolationRecord:
    """Abuse history of one principal, global across endpoint classes.

    All timestamps are epoch milliseconds.
    """

    identity: str
    count: int = 0
    first_violation: int | None = None
    last_violation: int | None = None
    blocked: bool = False
    blocked_until: int | None = None

    def is_blocked(self, now_ms: int) -> bool:
        return bool(self.blocked and self.blocked_until is not None and now_ms < self.blocked_until)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ViolationRecord":
        """Build a record from persisted data.

        Raises:
            ValueError: If required fields are missing or have the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError("violation record must be an object")
        try:
            identity = str(data["identity"])
            count = int(data["count"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid violation record: {exc}") from exc
        if count < 0:
            raise ValueError("violation count must be non-negative")

        def _optional_int(name: str) -> int | None:
            value = data.get(name)
            return None if value is None else int(value)

        try:
            return cls(
                identity=identity,
                count=count,
                first_violation=_optional_int("first_violation"),
                last_violation=_optional_int("last_violation"),
                blocked=bool(data.get("blocked", False)),
                blocked_until=_optional_int("blocked_until"),
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid violation record: {exc}") from exc


@dataclass(frozen=True)
class Decision:
    """Immutable outcome of one rate limit evaluation.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Effective limit applied (base limit shrunk by backoff).
        remaining: Requests left in the current window.
        reset_at: Epoch milliseconds when budget frees up.
        violations: Violation count of the principal after this decision.
        backoff_multiplier: Divisor applied to the base limit.
        blocked_until: Epoch milliseconds when an active block lifts.
        retry_after: Seconds a rejected caller should wait.
        degraded: True when the decision was made while failing open.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    violations: int
    backoff_multiplier: int
    category: EndpointClass
    role: Role
    blocked_until: int | None = None
    retry_after: int | None = None
    degraded: bool = False

    @property
    def blocked(self) -> bool:
        return self.blocked_until is not None


class WindowCounterStore(Protocol):
    """Protocol for sliding window counters.

    Implementations answer "how many admitted events for this key fall inside
    the last window" and record a new event when under the limit.
    """

    async def admit(self, key: str, window_seconds: int, limit: int, now_ms: int) -> WindowResult:
        """Purge expired events, count, and record the attempt if under limit.

        Args:
            key: Counter key, e.g. "API:STUDENT:10.0.0.1:42".
            window_seconds: Sliding window length.
            limit: Effective limit for this decision.
            now_ms: Current time in epoch milliseconds.

        Raises:
            LimitStoreUnavailable: If the backing store cannot be reached.
        """
        ...

    async def clear(self, principal: str) -> int:
        """Drop every window belonging to a principal. Returns keys removed."""
        ...


class ViolationStore(Protocol):
    """Protocol for persisting violation records with a per-record TTL."""

    async def load(self, identity: str, now_ms: int) -> dict[str, Any] | None:
        """Return the raw persisted record, or None when absent/expired.

        Raises:
            LimitStoreUnavailable: If the backing store cannot be reached.
            ValueError: If the persisted payload cannot be decoded.
        """
        ...

    async def save(
        self,
        record: ViolationRecord,
        now_ms: int,
        ttl_seconds: int | None,
    ) -> None:
        """Persist a record. ``ttl_seconds=None`` keeps the current expiry."""
        ...

    async def delete(self, identity: str) -> bool:
        ...

    def scan(self, now_ms: int) -> AsyncIterator[tuple[str, dict[str, Any] | None]]:
        """Iterate (identity, raw record) pairs; raw is None when undecodable."""
        ...
