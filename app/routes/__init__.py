"""API routes for the SSO federation service."""

from .health import router as health_router
from .sso import router as sso_router
from .sso_admin import router as sso_admin_router

__all__ = [
    "health_router",
    "sso_router",
    "sso_admin_router",
]
