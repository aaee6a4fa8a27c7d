"""
SSO (Single Sign-On) Type Definitions.

This module defines the per-organization SSO configuration and the
normalized identity produced by a federated login, for both SAML 2.0
and OpenID Connect (OIDC).

The configuration models are immutable and use the camelCase field names
of the persisted JSON document:

    { "protocol": "oidc" | "saml2",
      "oidc": {...} | "saml2": {...},
      "domainVerificationRequired": true,
      "jitProvisioningEnabled": true }

Security Considerations:
- clientSecret is a SecretStr and is excluded from every public representation
- Certificates are checked for PEM framing here; validity is checked at use
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)


# =============================================================================
# Enums
# =============================================================================


class SSOProtocol(str, Enum):
    """Supported federation protocols."""

    OIDC = "oidc"
    SAML2 = "saml2"

    @classmethod
    def _missing_(cls, value: object) -> Optional["SSOProtocol"]:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @property
    def identity_provider(self) -> str:
        """Namespaced provider string stored on provisioned users."""
        return f"sso_{self.value}"


DEFAULT_SAML_ATTRIBUTE_MAPPING: Dict[str, str] = {
    "email": "email",
    "name": "name",
    "subject": "NameID",
    "groups": "groups",
}


# =============================================================================
# Protocol Configuration Models
# =============================================================================


class _FrozenConfig(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class OidcConfig(_FrozenConfig):
    """
    OIDC relying-party configuration for one organization.

    Security:
    - issuer is compared to the token's iss claim by exact match
    - client_secret is write-only: never returned by public_dict()
    """

    issuer: str = Field(..., min_length=1, max_length=500)
    client_id: str = Field(..., alias="clientId", min_length=1, max_length=255)
    client_secret: SecretStr = Field(..., alias="clientSecret")
    authorization_endpoint: Optional[str] = Field(
        None, alias="authorizationEndpoint", max_length=500
    )
    token_endpoint: Optional[str] = Field(None, alias="tokenEndpoint", max_length=500)
    user_info_endpoint: Optional[str] = Field(
        None, alias="userInfoEndpoint", max_length=500
    )
    jwks_uri: Optional[str] = Field(None, alias="jwksUri", max_length=500)
    logout_endpoint: Optional[str] = Field(None, alias="logoutEndpoint", max_length=500)

    @field_validator("client_secret")
    @classmethod
    def validate_client_secret(cls, v: SecretStr) -> SecretStr:
        """Reject blank secrets."""
        if not v.get_secret_value().strip():
            raise ValueError("clientSecret must not be empty")
        if len(v.get_secret_value()) > 500:
            raise ValueError("clientSecret is too long")
        return v

    @property
    def effective_token_endpoint(self) -> str:
        """Configured token endpoint, or {issuer}/token."""
        return self.token_endpoint or f"{self.issuer.rstrip('/')}/token"

    @property
    def discovery_url(self) -> str:
        return f"{self.issuer.rstrip('/')}/.well-known/openid-configuration"


class Saml2Config(_FrozenConfig):
    """
    SAML2 service-provider configuration for one organization.

    Security:
    - requireSignedAssertions defaults to True; only an explicit opt-out
      disables the signature requirement
    - certificate must be PEM framed; it is checked for validity when loaded
    """

    idp_entity_id: str = Field(..., alias="idpEntityId", min_length=1, max_length=500)
    sso_url: str = Field(..., alias="ssoUrl", min_length=1, max_length=500)
    slo_url: Optional[str] = Field(None, alias="sloUrl", max_length=500)
    certificate: str = Field(..., min_length=1, max_length=5000)
    attribute_mapping: Dict[str, str] = Field(
        default_factory=dict, alias="attributeMapping"
    )
    require_signed_assertions: bool = Field(True, alias="requireSignedAssertions")

    @field_validator("certificate")
    @classmethod
    def validate_certificate_format(cls, v: str) -> str:
        """Ensure certificate is in PEM format."""
        v = v.strip()
        if not v.startswith("-----BEGIN CERTIFICATE-----"):
            raise ValueError("Certificate must be in PEM format")
        if not v.endswith("-----END CERTIFICATE-----"):
            raise ValueError("Certificate must be in PEM format")
        return v

    def mapped_attribute(self, logical_field: str) -> str:
        """IdP attribute name for a logical field, falling back to the defaults."""
        return self.attribute_mapping.get(
            logical_field, DEFAULT_SAML_ATTRIBUTE_MAPPING[logical_field]
        )


ProtocolConfig = Union[OidcConfig, Saml2Config]


class OrganizationSsoConfig(_FrozenConfig):
    """
    Complete SSO configuration stored per organization.

    Exactly one of oidc/saml2 is populated and it matches protocol.
    """

    protocol: SSOProtocol
    oidc: Optional[OidcConfig] = None
    saml2: Optional[Saml2Config] = None
    domain_verification_required: bool = Field(True, alias="domainVerificationRequired")
    jit_provisioning_enabled: bool = Field(True, alias="jitProvisioningEnabled")

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def validate_protocol_section(self) -> "OrganizationSsoConfig":
        if self.protocol is SSOProtocol.OIDC:
            if self.oidc is None:
                raise ValueError("oidc configuration is required for protocol 'oidc'")
            if self.saml2 is not None:
                raise ValueError("saml2 configuration must be absent for protocol 'oidc'")
        elif self.protocol is SSOProtocol.SAML2:
            if self.saml2 is None:
                raise ValueError("saml2 configuration is required for protocol 'saml2'")
            if self.oidc is not None:
                raise ValueError("oidc configuration must be absent for protocol 'saml2'")
        return self

    @property
    def protocol_config(self) -> ProtocolConfig:
        """The populated protocol section."""
        if self.protocol is SSOProtocol.OIDC:
            return self.oidc
        return self.saml2

    def storage_dict(self) -> Dict[str, Any]:
        """
        Full representation for the credential store, secret included.

        Never return this to a client.
        """
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        if self.oidc is not None:
            data["oidc"]["clientSecret"] = self.oidc.client_secret.get_secret_value()
        return data

    def public_dict(self) -> Dict[str, Any]:
        """Representation safe for API responses and audit metadata."""
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        if "oidc" in data:
            data["oidc"].pop("clientSecret", None)
        return data


# =============================================================================
# Federation Results
# =============================================================================


class FederatedIdentity(BaseModel):
    """
    Identity produced by a successful OIDC or SAML2 validation.

    Built fresh per authentication attempt and never cached or persisted.
    """

    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    display_name: str
    protocol: SSOProtocol
    organization_id: str
    groups: List[str] = Field(default_factory=list)

    @property
    def email_domain(self) -> str:
        return self.email.rsplit("@", 1)[-1].lower()


class OidcParams(BaseModel):
    """Inputs that accompany an OIDC authorization code."""

    model_config = ConfigDict(frozen=True)

    code_verifier: str
    redirect_uri: str


class Saml2Params(BaseModel):
    """SAML2 responses carry everything in the response blob."""

    model_config = ConfigDict(frozen=True)


ProtocolParams = Union[OidcParams, Saml2Params]


class LogoutParams(BaseModel):
    """Inputs for a best-effort IdP logout."""

    model_config = ConfigDict(frozen=True)

    id_token_hint: Optional[str] = None
    post_logout_redirect_uri: Optional[str] = None
    name_id: Optional[str] = None
    session_index: Optional[str] = None


def supported_protocols() -> List[str]:
    """Protocol names accepted in configurations and login requests."""
    return [protocol.value for protocol in SSOProtocol]


def is_protocol_supported(name: Optional[str]) -> bool:
    """Case-insensitive check of a protocol name."""
    if not name:
        return False
    return name.strip().lower() in supported_protocols()
