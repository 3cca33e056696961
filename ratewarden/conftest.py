"""Pytest configuration and fixtures for RateWarden tests.

This module sets up the test environment before any tests run, ensuring
that settings are properly configured for the test context.
"""

import os

import pytest


def pytest_configure(config):
    """Configure test environment before any tests run.

    Key test settings:
    - ENVIRONMENT=test (not development) - startup checks run as in CI
    - ALLOWED_HOSTS includes testserver for TestClient
    - LIMITS_BACKEND=memory so app tests never reach a developer's Redis;
      Redis integration tests read REDIS_URL themselves

    IMPORTANT: Set environment variables BEFORE importing the app to ensure
    settings are loaded with the test environment.
    """
    # Register custom markers for test categorization
    config.addinivalue_line("markers", "security: Security-related tests (required gate)")
    config.addinivalue_line("markers", "slow: Slow-running tests (excluded from fast)")
    config.addinivalue_line("markers", "integration: Integration tests requiring external services")

    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("LIMITS_BACKEND", "memory")

    # Ensure testserver is in allowed hosts for TestClient
    allowed_hosts = os.environ.get("ALLOWED_HOSTS", "localhost,127.0.0.1")
    if "testserver" not in allowed_hosts:
        allowed_hosts = f"{allowed_hosts},testserver"
        os.environ["ALLOWED_HOSTS"] = allowed_hosts


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop cached settings so monkeypatched env vars take effect."""
    from ratewarden.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()
