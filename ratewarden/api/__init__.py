"""API routers."""

from ratewarden.api.admin import router as admin_router
from ratewarden.api.health import router as health_router

__all__ = [
    "admin_router",
    "health_router",
]
