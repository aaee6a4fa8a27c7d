"""
Type definitions for the SSO federation service.
"""

from .organization import (
    AuditAction,
    AuditLogCreate,
    AuditLogEntry,
    Organization,
    OrganizationRole,
    OrgMembership,
    ResourceType,
    User,
)
from .sso import (
    DEFAULT_SAML_ATTRIBUTE_MAPPING,
    FederatedIdentity,
    LogoutParams,
    OidcConfig,
    OidcParams,
    OrganizationSsoConfig,
    ProtocolConfig,
    ProtocolParams,
    Saml2Config,
    Saml2Params,
    SSOProtocol,
    is_protocol_supported,
    supported_protocols,
)

__all__ = [
    # Organization types
    "AuditAction",
    "AuditLogCreate",
    "AuditLogEntry",
    "Organization",
    "OrganizationRole",
    "OrgMembership",
    "ResourceType",
    "User",
    # SSO types
    "DEFAULT_SAML_ATTRIBUTE_MAPPING",
    "FederatedIdentity",
    "LogoutParams",
    "OidcConfig",
    "OidcParams",
    "OrganizationSsoConfig",
    "ProtocolConfig",
    "ProtocolParams",
    "Saml2Config",
    "Saml2Params",
    "SSOProtocol",
    "is_protocol_supported",
    "supported_protocols",
]
