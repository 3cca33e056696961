"""Custom middleware for RateWarden."""

import secrets
import time
from typing import Callable, List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ratewarden.core.identity import (
    IPNetwork,
    RoleResolver,
    classify_endpoint,
    resolve_identity,
    state_role_resolver,
)
from ratewarden.core.limits import Decision
from ratewarden.core.logging import get_logger, request_context

logger = get_logger(__name__)


def _normalize_path(path: str) -> str:
    """Normalize request path for consistent matching.

    - Strips trailing slashes for consistency
    - Returns "/" for empty or root paths
    """
    return path.rstrip("/") or "/"


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    """X-RateLimit-* headers for a decision, including escalation state."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(0 if not decision.allowed else decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
        "X-RateLimit-Violations": str(decision.violations),
        "X-RateLimit-Backoff": str(decision.backoff_multiplier),
    }
    if not decision.allowed:
        if decision.retry_after is not None:
            headers["Retry-After"] = str(decision.retry_after)
        if decision.blocked_until is not None:
            headers["X-RateLimit-Blocked-Until"] = str(decision.blocked_until)
    return headers


def rate_limited_response(decision: Decision) -> JSONResponse:
    """Render a denied decision as a 429 error envelope."""
    ctx = request_context.get()
    if decision.blocked:
        message = "Too many violations, temporarily blocked"
    else:
        message = "Rate limit exceeded"
    content = {
        "detail": "Rate limit exceeded",
        "error": {
            "code": "E1005",
            "message": message,
            "request_id": ctx.get("request_id") if ctx else None,
        },
        "category": decision.category.value,
        "violations": decision.violations,
        "backoff_multiplier": decision.backoff_multiplier,
        "retry_after": decision.retry_after,
    }
    if decision.blocked_until is not None:
        content["blocked_until"] = decision.blocked_until
    return JSONResponse(
        status_code=429,
        content=content,
        headers=rate_limit_headers(decision),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to inject request context for logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with context."""
        request_id = request.headers.get("X-Request-ID") or secrets.token_hex(8)
        start_time = time.perf_counter()

        # Set context for logging
        ctx = {
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
        }
        token = request_context.set(ctx)

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                data={"duration_ms": round(duration_ms, 2)},
            )

            response.headers["X-Request-ID"] = request_id
            return response

        finally:
            request_context.reset(token)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Adaptive rate limiting backed by the app's DecisionEngine.

    The engine is read from ``request.app.state.decision_engine`` so it can
    be built in the lifespan. Until it exists requests pass through.

    Security exemptions:
    - OPTIONS method (CORS preflight - browsers need this unblocked)
    - Health/readiness endpoints (prevent self-inflicted outages)
    """

    EXEMPT_METHODS = frozenset({"OPTIONS"})
    EXEMPT_PATHS = frozenset({"/health", "/healthz", "/readyz"})

    def __init__(
        self,
        app,
        role_resolver: Optional[RoleResolver] = None,
        trusted_nets: Optional[List[IPNetwork]] = None,
    ):
        """Initialize the limiter.

        Args:
            app: The ASGI application
            role_resolver: Maps a request to (role, user_id); defaults to
                reading ``request.state``
            trusted_nets: Proxy networks allowed to set forwarding headers
        """
        super().__init__(app)
        self.role_resolver = role_resolver or state_role_resolver
        self.trusted_nets = trusted_nets

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Apply rate limiting to incoming requests."""
        path = _normalize_path(request.url.path)
        if request.method in self.EXEMPT_METHODS or path in self.EXEMPT_PATHS:
            return await call_next(request)

        engine = getattr(request.app.state, "decision_engine", None)
        if engine is None:
            return await call_next(request)

        identity = await resolve_identity(request, self.role_resolver, self.trusted_nets)
        category = classify_endpoint(request.method, path)
        decision = await engine.evaluate(identity, category)
        request.state.rate_limit = decision

        if not decision.allowed:
            return rate_limited_response(decision)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(decision))
        return response
