"""
RateWarden Application.

FastAPI application with structured logging, error handling,
and adaptive rate limiting middleware.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Optional

import uvicorn
from fastapi import FastAPI
from starlette.middleware.trustedhost import TrustedHostMiddleware

from ratewarden.api import admin_router, health_router
from ratewarden.config import get_settings
from ratewarden.core import (
    RateLimitMiddleware,
    RequestContextMiddleware,
    get_logger,
    setup_exception_handlers,
    setup_logging,
)
from ratewarden.core.identity import RoleResolver, parse_trusted_networks, state_role_resolver
from ratewarden.core.limits.engine import DecisionEngine
from ratewarden.core.limits.factory import get_stores_from_settings
from ratewarden.core.limits.policy import TieredLimitPolicy
from ratewarden.core.limits.sweeper import LimitStoreSweeper
from ratewarden.core.limits.violations import ViolationTracker
from ratewarden.core.startup_checks import run_startup_validations

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting RateWarden",
        data={
            "host": settings.host,
            "port": settings.port,
            "debug": settings.debug,
            "limits_backend": settings.effective_limits_backend,
        },
    )

    run_startup_validations(settings)

    _app.state.start_time = datetime.now(UTC)

    # Tests may install their own engine (fake clock, fake stores)
    stores = None
    sweeper = None
    if not hasattr(_app.state, "decision_engine"):
        stores = get_stores_from_settings(settings)
        tracker = ViolationTracker(stores.violation_store, ttl_seconds=settings.violation_ttl_seconds)

        fallback_window_store = None
        fallback_tracker = None
        if stores.is_distributed and settings.limits_fallback_to_local:
            fallback_window_store = stores.local_window_store
            fallback_tracker = ViolationTracker(
                stores.local_violation_store, ttl_seconds=settings.violation_ttl_seconds
            )

        _app.state.limit_stores = stores
        _app.state.decision_engine = DecisionEngine(
            TieredLimitPolicy(),
            stores.window_store,
            tracker,
            fallback_window_store=fallback_window_store,
            fallback_tracker=fallback_tracker,
            whitelist=settings.rate_limit_whitelist_list,
        )
        logger.info(
            "Initialized limit stores",
            data={
                "backend": stores.backend,
                "fallback": fallback_window_store is not None,
                "whitelisted_ips": len(settings.rate_limit_whitelist_list),
            },
        )

        sweeper = LimitStoreSweeper(
            stores.local_window_store,
            stores.local_violation_store,
            interval_seconds=settings.limits_sweep_interval_seconds,
        )
        await sweeper.start()
        _app.state.limit_sweeper = sweeper

    yield

    # Shutdown
    logger.info("Shutting down RateWarden")
    if sweeper is not None:
        await sweeper.stop()
    if stores is not None:
        await stores.aclose()
        del _app.state.decision_engine


def create_app(role_resolver: Optional[RoleResolver] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        role_resolver: Maps a request to (role, user_id). Defaults to reading
            ``request.state.role``/``request.state.user_id`` set by an
            upstream auth layer.
    """
    settings = get_settings()
    resolver = role_resolver or state_role_resolver

    app = FastAPI(
        title="RateWarden",
        description="Adaptive rate limiting and abuse mitigation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.role_resolver = resolver

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)

    # Add middleware (order matters - last added = first executed)
    # 1. Trusted host validation (reject Host header injection early)
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.allowed_hosts_list,
    )

    # 2. Rate limiting (tiered per role and endpoint class)
    app.add_middleware(
        RateLimitMiddleware,
        role_resolver=resolver,
        trusted_nets=parse_trusted_networks(settings.trusted_proxies_list),
    )

    # 3. Request context (inject request ID, log requests)
    app.add_middleware(RequestContextMiddleware)

    # Register routers
    app.include_router(health_router)
    app.include_router(admin_router)

    return app


# Create application instance
app = create_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run("ratewarden.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
