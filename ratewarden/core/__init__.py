"""Core module with logging, middleware, and exception handling."""

from ratewarden.core.exceptions import setup_exception_handlers
from ratewarden.core.logging import get_logger, setup_logging
from ratewarden.core.middleware import (
    RateLimitMiddleware,
    RequestContextMiddleware,
)
from ratewarden.core.identity import get_client_ip

__all__ = [
    "get_logger",
    "setup_logging",
    "RateLimitMiddleware",
    "RequestContextMiddleware",
    "get_client_ip",
    "setup_exception_handlers",
]
