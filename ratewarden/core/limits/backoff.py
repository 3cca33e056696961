"""Backoff calculator for repeat offenders.

Pure functions only. The multiplier shrinks the effective budget as
violations accumulate; the hard shutoff is the violation tracker's block.
"""

from __future__ import annotations

# Violations at which a principal gets blocked outright
BLOCK_THRESHOLD = 5

# Treated as "practically infinite": collapses any base limit to the floor of 1
SENTINEL_MULTIPLIER = 999

BASE_BLOCK_MS = 60 * 1000
MAX_BLOCK_MS = 60 * 60 * 1000

_MULTIPLIERS = (1, 1, 2, 4, 8, 16)


def backoff_multiplier(violations: int) -> int:
    """Map a violation count to the divisor applied to the base limit.

    0 -> 1, 1 -> 1, 2 -> 2, 3 -> 4, 4 -> 8, 5 -> 16, >=6 -> 999.
    Negative counts are treated as 0.
    """
    if violations < 0:
        violations = 0
    if violations < len(_MULTIPLIERS):
        return _MULTIPLIERS[violations]
    return SENTINEL_MULTIPLIER


def effective_limit(base_limit: int, violations: int) -> int:
    """Base limit shrunk by backoff, never below 1."""
    return max(1, base_limit // backoff_multiplier(violations))


def block_duration_ms(violations: int) -> int:
    """Block length for a principal that just reached ``violations``.

    Zero below the threshold, then 1 minute doubling per violation, capped at
    one hour.
    """
    if violations < BLOCK_THRESHOLD:
        return 0
    exponent = violations - BLOCK_THRESHOLD
    # 2**6 minutes already exceeds the cap
    if exponent >= 6:
        return MAX_BLOCK_MS
    return min(MAX_BLOCK_MS, BASE_BLOCK_MS * (2 ** exponent))
