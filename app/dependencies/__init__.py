"""
FastAPI dependencies for the SSO federation API.

Services are built once in the application lifespan and stored on
app.state; these dependencies hand them to route handlers.

Usage:
    from app.dependencies import get_login_service, get_request_context
"""

from typing import Any, Dict, Optional

from fastapi import Header, Request

from src.auth.sso.login_service import SSOLoginService
from src.organizations.audit_service import build_request_context
from src.organizations.sso_config_service import SSOConfigService


def get_login_service(request: Request) -> SSOLoginService:
    return request.app.state.login_service


def get_config_service(request: Request) -> SSOConfigService:
    return request.app.state.config_service


def get_request_context(request: Request) -> Dict[str, Any]:
    """IP address, user agent and request id for the audit trail."""
    peer = request.client.host if request.client else None
    return build_request_context(request.headers, peer)


def get_actor_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> Optional[str]:
    """
    Acting user as established by the session layer in front of this API.

    A missing header is passed through; the config service rejects it with
    PERMISSION_DENIED.
    """
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


__all__ = [
    "get_actor_user_id",
    "get_config_service",
    "get_login_service",
    "get_request_context",
]
