"""Tiered limit policy: (endpoint class, role) -> (limit, window).

This table is the only place limit numbers are defined. Read-heavy classes
get high per-minute ceilings, uploads get hour-long windows with low
ceilings. Guardians sit above students (several linked children), admins get
the highest ceilings, and unauthenticated callers always get the strictest
tier of a class.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from ratewarden.core.exceptions import PolicyConfigurationError
from ratewarden.core.limits import EndpointClass, LimitPolicy, Role

PolicyTable = Mapping[tuple[EndpointClass, Role], tuple[int, int]]

_MINUTE = 60
_HOUR = 60 * 60

DEFAULT_POLICY_TABLE: PolicyTable = MappingProxyType(
    {
        (EndpointClass.API, Role.STUDENT): (120, _MINUTE),
        (EndpointClass.API, Role.GUARDIAN): (150, _MINUTE),
        (EndpointClass.API, Role.ADMIN): (300, _MINUTE),
        (EndpointClass.API, Role.UNAUTHENTICATED): (30, _MINUTE),
        (EndpointClass.AUTH, Role.STUDENT): (10, _MINUTE),
        # Guardians must stay above students
        (EndpointClass.AUTH, Role.GUARDIAN): (15, _MINUTE),
        (EndpointClass.AUTH, Role.ADMIN): (20, _MINUTE),
        (EndpointClass.AUTH, Role.UNAUTHENTICATED): (5, _MINUTE),
        (EndpointClass.UPLOAD, Role.STUDENT): (15, _HOUR),
        (EndpointClass.UPLOAD, Role.GUARDIAN): (20, _HOUR),
        (EndpointClass.UPLOAD, Role.ADMIN): (50, _HOUR),
        (EndpointClass.UPLOAD, Role.UNAUTHENTICATED): (3, _HOUR),
        (EndpointClass.READ, Role.STUDENT): (200, _MINUTE),
        (EndpointClass.READ, Role.GUARDIAN): (250, _MINUTE),
        (EndpointClass.READ, Role.ADMIN): (500, _MINUTE),
        (EndpointClass.READ, Role.UNAUTHENTICATED): (50, _MINUTE),
        (EndpointClass.MODERATION, Role.STUDENT): (50, _MINUTE),
        (EndpointClass.MODERATION, Role.GUARDIAN): (60, _MINUTE),
        (EndpointClass.MODERATION, Role.ADMIN): (200, _MINUTE),
        (EndpointClass.MODERATION, Role.UNAUTHENTICATED): (10, _MINUTE),
    }
)


def validate_policy_table(table: PolicyTable) -> list[str]:
    """Validate a policy table.

    Returns a list of error messages (empty if valid) so every problem is
    reported at once.
    """
    errors: list[str] = []

    for category in EndpointClass:
        for role in Role:
            entry = table.get((category, role))
            if entry is None:
                errors.append(f"Missing limit policy for {category.value}/{role.value}")
                continue
            limit, window_seconds = entry
            if limit < 1:
                errors.append(f"Limit for {category.value}/{role.value} must be >= 1 (got {limit})")
            if window_seconds < 1:
                errors.append(
                    f"Window for {category.value}/{role.value} must be >= 1s (got {window_seconds})"
                )

        anonymous = table.get((category, Role.UNAUTHENTICATED))
        if anonymous is None:
            continue
        for role in Role:
            entry = table.get((category, role))
            if role is Role.UNAUTHENTICATED or entry is None:
                continue
            if entry[0] < anonymous[0]:
                errors.append(
                    f"{category.value}/UNAUTHENTICATED must be the strictest tier "
                    f"({anonymous[0]} > {role.value} {entry[0]})"
                )

    return errors


class TieredLimitPolicy:
    """Immutable lookup over a validated policy table."""

    def __init__(self, table: PolicyTable | None = None):
        source = DEFAULT_POLICY_TABLE if table is None else table
        errors = validate_policy_table(source)
        if errors:
            raise PolicyConfigurationError(errors)
        self._policies: Mapping[tuple[EndpointClass, Role], LimitPolicy] = MappingProxyType(
            {
                key: LimitPolicy(
                    category=key[0],
                    role=key[1],
                    limit=int(limit),
                    window_seconds=int(window_seconds),
                )
                for key, (limit, window_seconds) in source.items()
            }
        )

    def resolve(self, category: EndpointClass, role: Role) -> LimitPolicy:
        """Return the policy for a pair.

        Raises:
            PolicyConfigurationError: Only for pairs outside the validated table.
        """
        try:
            return self._policies[(category, role)]
        except KeyError:
            raise PolicyConfigurationError(
                [f"No limit policy for {category}/{role}"]
            ) from None

    def __iter__(self):
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)
