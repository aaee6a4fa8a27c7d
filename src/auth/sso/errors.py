"""
Federation error taxonomy.

Every failure of a federated login is a terminal, non-retriable error for
that attempt. Each class maps to an HTTP status and a machine-readable code;
the client-facing message is fixed per class while provider bodies, stack
traces and certificate contents only ever go to internal_message.

Exception Hierarchy:
    SSOFederationError (base, 401)
    ├── ConfigInvalid (500)
    ├── UnsupportedProtocol (400)
    ├── InvalidRequest (400)
    ├── InvalidEmail (400)
    ├── MalformedResponse (400)
    ├── TenantNotFound / SSONotConfigured / DomainMismatch
    ├── OIDC: TokenExchangeFailed, MissingIdToken, InvalidIdToken,
    │         TokenExpired, InvalidIssuer, AudienceMismatch, MissingClaim
    ├── SAML2: InvalidIdpCertificate, NoAssertion, UnsignedAssertion,
    │          InvalidSignature, AssertionExpired, AssertionNotYetValid,
    │          MissingEmailAttribute
    ├── ProvisioningDisabled
    ├── PermissionDenied (403)
    └── OrganizationNotFound (404)
"""

from enum import Enum
from typing import Any, Dict, Optional


class SSOErrorCode(str, Enum):
    """Machine-readable codes returned with federation failures."""

    CONFIG_INVALID = "SSO_CONFIG_INVALID"
    UNSUPPORTED_PROTOCOL = "SSO_UNSUPPORTED_PROTOCOL"
    INVALID_REQUEST = "SSO_INVALID_REQUEST"
    TENANT_NOT_FOUND = "SSO_TENANT_NOT_FOUND"
    INVALID_EMAIL = "SSO_INVALID_EMAIL"
    NOT_CONFIGURED = "SSO_NOT_CONFIGURED"
    DOMAIN_MISMATCH = "SSO_DOMAIN_MISMATCH"

    # OIDC
    TOKEN_EXCHANGE_FAILED = "OIDC_TOKEN_EXCHANGE_FAILED"
    MISSING_ID_TOKEN = "OIDC_MISSING_ID_TOKEN"
    INVALID_ID_TOKEN = "OIDC_INVALID_ID_TOKEN"
    TOKEN_EXPIRED = "OIDC_TOKEN_EXPIRED"
    INVALID_ISSUER = "OIDC_INVALID_ISSUER"
    AUDIENCE_MISMATCH = "OIDC_AUDIENCE_MISMATCH"
    MISSING_CLAIM = "OIDC_MISSING_CLAIM"

    # SAML2
    MALFORMED_RESPONSE = "SAML_MALFORMED_RESPONSE"
    INVALID_IDP_CERTIFICATE = "SAML_INVALID_IDP_CERTIFICATE"
    NO_ASSERTION = "SAML_NO_ASSERTION"
    UNSIGNED_ASSERTION = "SAML_UNSIGNED_ASSERTION"
    INVALID_SIGNATURE = "SAML_INVALID_SIGNATURE"
    ASSERTION_EXPIRED = "SAML_ASSERTION_EXPIRED"
    ASSERTION_NOT_YET_VALID = "SAML_ASSERTION_NOT_YET_VALID"
    MISSING_EMAIL_ATTRIBUTE = "SAML_MISSING_EMAIL_ATTRIBUTE"

    # Provisioning and administration
    PROVISIONING_DISABLED = "SSO_PROVISIONING_DISABLED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"


class SSOFederationError(Exception):
    """
    Base exception for federation failures.

    Attributes:
        message: Client-safe message.
        error_code: Machine-readable code from SSOErrorCode.
        status_code: HTTP status code to return.
        protocol: "oidc" / "saml2" when known, for logging.
        organization_id: Tenant being logged into, for logging.
        details: Additional client-safe context.
        internal_message: Diagnostic text for logs only.
    """

    status_code: int = 401
    default_error_code: SSOErrorCode = SSOErrorCode.INVALID_REQUEST
    default_message: str = "SSO authentication failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        protocol: Optional[str] = None,
        organization_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.error_code = self.default_error_code
        self.protocol = protocol
        self.organization_id = organization_id
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(self.message)

    def with_context(
        self,
        protocol: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> "SSOFederationError":
        """Fill in protocol/organization when the raiser did not know them."""
        if self.protocol is None and protocol is not None:
            self.protocol = protocol
        if self.organization_id is None and organization_id is not None:
            self.organization_id = organization_id
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing body; never includes internal_message."""
        response = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.details:
            response["details"] = self.details
        return response

    def log_context(self) -> Dict[str, Any]:
        """Fields attached to the failure log record."""
        return {
            "error_code": self.error_code.value,
            "protocol": self.protocol or "-",
            "organization_id": self.organization_id or "-",
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value!r}, "
            f"status_code={self.status_code})"
        )


# =============================================================================
# Configuration and Input Errors
# =============================================================================


class ConfigInvalid(SSOFederationError):
    """Stored or submitted SSO configuration is malformed or incomplete."""

    status_code = 500
    default_error_code = SSOErrorCode.CONFIG_INVALID
    default_message = "SSO configuration is invalid"


class UnsupportedProtocol(SSOFederationError):
    status_code = 400
    default_error_code = SSOErrorCode.UNSUPPORTED_PROTOCOL
    default_message = "Unsupported SSO protocol"


class InvalidRequest(SSOFederationError):
    """Input contract violation (empty auth data, missing PKCE verifier...)."""

    status_code = 400
    default_error_code = SSOErrorCode.INVALID_REQUEST
    default_message = "Invalid SSO request"


class InvalidEmail(SSOFederationError):
    status_code = 400
    default_error_code = SSOErrorCode.INVALID_EMAIL
    default_message = "Invalid email address"


# =============================================================================
# Tenant Errors
# =============================================================================


class TenantNotFound(SSOFederationError):
    default_error_code = SSOErrorCode.TENANT_NOT_FOUND
    default_message = "No organization is configured for this email domain"


class SSONotConfigured(SSOFederationError):
    default_error_code = SSOErrorCode.NOT_CONFIGURED
    default_message = "SSO is not configured for this organization"


class DomainMismatch(SSOFederationError):
    """Authenticated email belongs to a different domain than the tenant."""

    default_error_code = SSOErrorCode.DOMAIN_MISMATCH
    default_message = "Authenticated email does not belong to this organization"


# =============================================================================
# OIDC Errors
# =============================================================================


class TokenExchangeFailed(SSOFederationError):
    default_error_code = SSOErrorCode.TOKEN_EXCHANGE_FAILED
    default_message = "Authorization code exchange failed"


class MissingIdToken(SSOFederationError):
    default_error_code = SSOErrorCode.MISSING_ID_TOKEN
    default_message = "Identity provider did not return an ID token"


class InvalidIdToken(SSOFederationError):
    """Undecodable token, bad signature or unknown signing key."""

    default_error_code = SSOErrorCode.INVALID_ID_TOKEN
    default_message = "ID token validation failed"


class TokenExpired(SSOFederationError):
    default_error_code = SSOErrorCode.TOKEN_EXPIRED
    default_message = "ID token has expired"


class InvalidIssuer(SSOFederationError):
    default_error_code = SSOErrorCode.INVALID_ISSUER
    default_message = "ID token issuer does not match"


class AudienceMismatch(SSOFederationError):
    default_error_code = SSOErrorCode.AUDIENCE_MISMATCH
    default_message = "ID token audience does not match"


class MissingClaim(SSOFederationError):
    default_error_code = SSOErrorCode.MISSING_CLAIM
    default_message = "ID token is missing a required claim"


# =============================================================================
# SAML2 Errors
# =============================================================================


class MalformedResponse(SSOFederationError):
    status_code = 400
    default_error_code = SSOErrorCode.MALFORMED_RESPONSE
    default_message = "SAML response is malformed"


class InvalidIdpCertificate(SSOFederationError):
    default_error_code = SSOErrorCode.INVALID_IDP_CERTIFICATE
    default_message = "Identity provider certificate is invalid"


class NoAssertion(SSOFederationError):
    default_error_code = SSOErrorCode.NO_ASSERTION
    default_message = "SAML response contains no assertion"


class UnsignedAssertion(SSOFederationError):
    default_error_code = SSOErrorCode.UNSIGNED_ASSERTION
    default_message = "SAML response and assertion are not signed"


class InvalidSignature(SSOFederationError):
    default_error_code = SSOErrorCode.INVALID_SIGNATURE
    default_message = "SAML signature is invalid"


class AssertionExpired(SSOFederationError):
    default_error_code = SSOErrorCode.ASSERTION_EXPIRED
    default_message = "SAML assertion has expired"


class AssertionNotYetValid(SSOFederationError):
    default_error_code = SSOErrorCode.ASSERTION_NOT_YET_VALID
    default_message = "SAML assertion is not yet valid"


class MissingEmailAttribute(SSOFederationError):
    default_error_code = SSOErrorCode.MISSING_EMAIL_ATTRIBUTE
    default_message = "SAML assertion is missing the email attribute"


# =============================================================================
# Provisioning and Administration Errors
# =============================================================================


class ProvisioningDisabled(SSOFederationError):
    """JIT provisioning is off and the user or membership does not exist."""

    default_error_code = SSOErrorCode.PROVISIONING_DISABLED
    default_message = "Account provisioning is disabled for this organization"


class PermissionDenied(SSOFederationError):
    status_code = 403
    default_error_code = SSOErrorCode.PERMISSION_DENIED
    default_message = "Only organization admins can manage SSO settings"


class OrganizationNotFound(SSOFederationError):
    status_code = 404
    default_error_code = SSOErrorCode.ORGANIZATION_NOT_FOUND
    default_message = "Organization not found"


class SAMLRuntimeNotInitialized(RuntimeError):
    """SAML validation attempted before init_saml_runtime()."""
