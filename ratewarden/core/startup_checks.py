"""Startup configuration checks.

Validates the limit policy and limiter settings before the app takes traffic.
Policy problems always abort startup; deployment concerns (per-worker
in-process counters in production) are stricter outside development.
"""

import ipaddress
import logging
from typing import List, Optional

from ratewarden.config import Settings
from ratewarden.core.exceptions import PolicyConfigurationError
from ratewarden.core.limits.policy import DEFAULT_POLICY_TABLE, PolicyTable, validate_policy_table

logger = logging.getLogger(__name__)


class StartupConfigError(Exception):
    """Raised when limiter configuration fails validation."""
    pass


def validate_limit_settings(settings: Settings) -> List[str]:
    """Validate limiter settings.

    Returns a list of error messages (empty if valid).
    This allows collecting all violations before failing.

    Args:
        settings: The application settings to validate

    Returns:
        List of error messages (empty if valid)
    """
    errors: List[str] = []

    for proxy in settings.trusted_proxies_list:
        try:
            ipaddress.ip_network(proxy, strict=False)
        except ValueError:
            errors.append(f"TRUSTED_PROXIES contains an invalid network: '{proxy}'")

    for ip in settings.rate_limit_whitelist_list:
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            errors.append(f"RATE_LIMIT_WHITELIST contains an invalid IP address: '{ip}'")

    if (settings.is_production or settings.is_staging) and settings.effective_limits_backend == "memory":
        errors.append(
            "LIMITS_BACKEND resolves to 'memory' in production; counters would be "
            "per-worker. Set REDIS_URL or LIMITS_BACKEND=redis"
        )

    return errors


def collect_limit_warnings(settings: Settings) -> List[str]:
    """Non-fatal limiter configuration warnings."""
    warnings: List[str] = []

    if settings.effective_limits_backend == "redis" and not settings.limits_fallback_to_local:
        warnings.append(
            "LIMITS_FALLBACK_TO_LOCAL is disabled; requests are admitted "
            "uncounted while Redis is unreachable"
        )

    if settings.rate_limit_whitelist_list and settings.is_production:
        warnings.append(
            f"{len(settings.rate_limit_whitelist_list)} IP(s) bypass rate limiting "
            "via RATE_LIMIT_WHITELIST"
        )

    return warnings


def assert_policy_table(table: Optional[PolicyTable] = None) -> None:
    """Raise PolicyConfigurationError unless the table covers every pair."""
    errors = validate_policy_table(DEFAULT_POLICY_TABLE if table is None else table)
    if errors:
        error_msg = "\n".join(f"  - {e}" for e in errors)
        logger.error(f"Rate limit policy validation failed:\n{error_msg}")
        raise PolicyConfigurationError(errors)


def run_startup_validations(settings: Settings, table: Optional[PolicyTable] = None) -> None:
    """Run all startup validations.

    Args:
        settings: The application settings
        table: Policy table to validate (defaults to the built-in table)

    Raises:
        PolicyConfigurationError: If the policy table is invalid
        StartupConfigError: If limiter settings are invalid
    """
    assert_policy_table(table)

    errors = validate_limit_settings(settings)
    if errors:
        error_msg = "\n".join(f"  - {e}" for e in errors)
        logger.error(f"Limiter configuration validation failed:\n{error_msg}")
        raise StartupConfigError(f"Limiter configuration errors:\n{error_msg}")

    for warning in collect_limit_warnings(settings):
        logger.warning(f"Limiter configuration warning: {warning}")

    logger.info("Limiter configuration validation passed")
