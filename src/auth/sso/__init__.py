"""
SSO (Single Sign-On) federation module.

Validates identity assertions from a tenant's external Identity Provider:
- OIDC (OpenID Connect) authorization-code flow with PKCE
- SAML 2.0 (Security Assertion Markup Language) responses

Security Architecture:
- ID tokens are verified against the IdP's JWKS; iss, aud and exp are enforced
- SAML signatures are verified with the configured IdP certificate
- SAML time windows allow a symmetric 5 minute clock skew
- Failures are typed (see errors) and never retried

Usage:
    from src.auth.sso import FederationDispatcher, init_saml_runtime, parse_sso_config

    init_saml_runtime()  # once, at process start

    config = parse_sso_config(organization.sso_config, organization.id)
    identity = await FederationDispatcher().authenticate(
        config, auth_data, params, organization.id
    )

The full login pipeline (tenant resolution, domain binding, provisioning)
lives in src.auth.sso.login_service.
"""

from src.auth.sso.config_parser import parse_sso_config
from src.auth.sso.dispatcher import FederationDispatcher
from src.auth.sso.errors import SAMLRuntimeNotInitialized, SSOErrorCode, SSOFederationError
from src.auth.sso.oidc_service import JWKSCache, OIDCService, get_oidc_service
from src.auth.sso.saml_service import (
    SAMLService,
    get_saml_service,
    init_saml_runtime,
    is_saml_runtime_initialized,
)

__all__ = [
    # Entry points
    "FederationDispatcher",
    "parse_sso_config",
    "init_saml_runtime",
    "is_saml_runtime_initialized",
    # Validators
    "OIDCService",
    "SAMLService",
    "JWKSCache",
    "get_oidc_service",
    "get_saml_service",
    # Errors
    "SSOErrorCode",
    "SSOFederationError",
    "SAMLRuntimeNotInitialized",
]
