"""
SSO Administration API Endpoints.

Organization admins read and replace their SSO configuration here.

Security Considerations:
- Only ADMIN members of the organization may read or update
- clientSecret is write-only and never returned
- Configuration changes are written to the audit log
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from app.dependencies import get_actor_user_id, get_config_service, get_request_context
from app.models.requests import SSOConfigResponse
from src.organizations.sso_config_service import SSOConfigService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations", tags=["sso-admin"])


@router.get(
    "/{organization_id}/sso",
    response_model=SSOConfigResponse,
    summary="Get SSO Configuration",
    description="Current SSO configuration without secrets.",
)
async def get_sso_config(
    organization_id: str,
    actor_user_id: Optional[str] = Depends(get_actor_user_id),
    config_service: SSOConfigService = Depends(get_config_service),
) -> SSOConfigResponse:
    config = await config_service.get_config(organization_id, actor_user_id)
    return SSOConfigResponse(organization_id=organization_id, config=config)


@router.put(
    "/{organization_id}/sso",
    response_model=SSOConfigResponse,
    summary="Update SSO Configuration",
    description=(
        "Replace the SSO configuration. Omit oidc.clientSecret to keep the "
        "stored secret."
    ),
)
async def update_sso_config(
    organization_id: str,
    raw_config: Dict[str, Any] = Body(...),
    actor_user_id: Optional[str] = Depends(get_actor_user_id),
    config_service: SSOConfigService = Depends(get_config_service),
    request_context: Dict[str, Any] = Depends(get_request_context),
) -> SSOConfigResponse:
    config = await config_service.update_config(
        organization_id,
        raw_config,
        actor_user_id,
        request_context=request_context,
    )
    return SSOConfigResponse(organization_id=organization_id, config=config)
