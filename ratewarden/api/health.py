"""
Health check endpoints.

Provides liveness and readiness probes for monitoring. These paths are
exempt from rate limiting.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from ratewarden.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/healthz")
async def healthcheck(request: Request) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns basic service health status. Used by load balancers,
    orchestrators, and monitoring systems.
    """
    settings = get_settings()
    stores = getattr(request.app.state, "limit_stores", None)

    return {
        "status": "ok",
        "version": "0.1.0",
        "timestamp": datetime.now(UTC).isoformat(),
        "environment": settings.environment,
        "limits_backend": stores.backend if stores is not None else settings.effective_limits_backend,
    }


@router.get("/readyz")
async def readiness(request: Request) -> JSONResponse:
    """
    Readiness check endpoint.

    The shared store is reported but never gates readiness: the limiter
    fails open when it is unreachable.
    """
    engine = getattr(request.app.state, "decision_engine", None)
    stores = getattr(request.app.state, "limit_stores", None)
    checks: dict[str, bool] = {
        "limiter": engine is not None,
        "config": True,
    }
    details: dict[str, Any] = {}

    if stores is not None and stores.client is not None:
        try:
            details["redis"] = bool(await stores.client.ping())
        except Exception:
            details["redis"] = False

    all_ready = all(checks.values())
    payload: dict[str, Any] = {
        "status": "ready" if all_ready else "not_ready",
        "timestamp": datetime.now(UTC).isoformat(),
        "checks": checks,
    }
    if details:
        payload["details"] = details

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=payload,
    )
