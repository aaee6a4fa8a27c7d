"""
SSO (Single Sign-On) API Endpoints.

This module provides REST endpoints for federated login:
- Callback: authorization code (OIDC) or SAML response (SAML2)
- Logout: best-effort IdP logout

Security Considerations:
- The organization is resolved from the email domain, never from input
- Provider error bodies and certificate contents are never returned
- Session issuance is handled by the session layer in front of this API
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.dependencies import get_login_service, get_request_context
from app.models.requests import (
    SSOCallbackRequest,
    SSOCallbackResponse,
    SSOLogoutRequest,
    SSOLogoutResponse,
    SSOUserResponse,
)
from src.auth.sso.login_service import SSOLoginService
from src.types.sso import LogoutParams

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/sso", tags=["sso"])


@router.post(
    "/callback",
    response_model=SSOCallbackResponse,
    summary="Complete SSO login",
    description="Validate an authorization code or SAML response and provision the user.",
)
async def sso_callback(
    body: SSOCallbackRequest,
    login_service: SSOLoginService = Depends(get_login_service),
    request_context: Dict[str, Any] = Depends(get_request_context),
) -> SSOCallbackResponse:
    result = await login_service.login(
        email=body.email,
        auth_data=body.code,
        protocol=body.protocol,
        code_verifier=body.code_verifier,
        redirect_uri=body.redirect_uri,
        request_context=request_context,
    )

    return SSOCallbackResponse(
        user=SSOUserResponse(
            id=result.user.id,
            email=result.user.email,
            display_name=result.user.display_name,
        ),
        organization_id=result.organization.id,
        membership_role=result.membership.role.value,
        created_user=result.created_user,
    )


@router.post(
    "/logout",
    response_model=SSOLogoutResponse,
    summary="SSO logout",
    description="Notify the tenant's IdP of a logout. Never fails because of the IdP.",
)
async def sso_logout(
    body: SSOLogoutRequest,
    login_service: SSOLoginService = Depends(get_login_service),
) -> SSOLogoutResponse:
    idp_logout = await login_service.logout(
        body.email,
        LogoutParams(
            id_token_hint=body.id_token_hint,
            post_logout_redirect_uri=body.post_logout_redirect_uri,
            name_id=body.name_id,
            session_index=body.session_index,
        ),
    )
    return SSOLogoutResponse(idp_logout=idp_logout)
