"""
Pydantic request and response models for the SSO endpoints.

Field names are camelCase on the wire. Most fields are optional here so
that missing input surfaces as the federation error codes (INVALID_EMAIL,
INVALID_REQUEST) rather than a generic validation failure.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_AUTH_DATA_LENGTH = 1_000_000  # Base64 SAML responses can be large
MAX_EMAIL_LENGTH = 320


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SSOCallbackRequest(_CamelModel):
    """Authorization code or SAML response posted back by the client."""

    protocol: Optional[str] = Field(default=None, max_length=32)
    code: Optional[str] = Field(default=None, max_length=MAX_AUTH_DATA_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    code_verifier: Optional[str] = Field(default=None, alias="codeVerifier", max_length=256)
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri", max_length=2048)


class SSOLogoutRequest(_CamelModel):
    """Best-effort IdP logout for the tenant owning the email domain."""

    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    id_token_hint: Optional[str] = Field(default=None, alias="idTokenHint")
    post_logout_redirect_uri: Optional[str] = Field(
        default=None, alias="postLogoutRedirectUri", max_length=2048
    )
    name_id: Optional[str] = Field(default=None, alias="nameId")
    session_index: Optional[str] = Field(default=None, alias="sessionIndex")


class SSOUserResponse(_CamelModel):
    id: str
    email: str
    display_name: str = Field(..., alias="displayName")


class SSOCallbackResponse(_CamelModel):
    """Provisioned user and tenant binding; session issuance happens elsewhere."""

    success: bool = True
    user: SSOUserResponse
    organization_id: str = Field(..., alias="organizationId")
    membership_role: str = Field(..., alias="membershipRole")
    created_user: bool = Field(..., alias="createdUser")


class SSOLogoutResponse(_CamelModel):
    success: bool = True
    idp_logout: bool = Field(..., alias="idpLogout")


class SSOConfigResponse(_CamelModel):
    """Redacted SSO configuration (never includes clientSecret)."""

    success: bool = True
    organization_id: str = Field(..., alias="organizationId")
    config: Optional[Dict[str, Any]] = None
