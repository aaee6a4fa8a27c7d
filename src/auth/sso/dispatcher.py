"""
Federation dispatcher.

Protocol-agnostic entry point: enforces the input contract, routes on the
configured protocol section to the OIDC or SAML2 validator, and returns the
normalized FederatedIdentity. It carries no cryptographic logic itself.
"""

import asyncio
import logging
from typing import Optional

from src.auth.sso.errors import InvalidRequest, UnsupportedProtocol
from src.auth.sso.oidc_service import OIDCService, get_oidc_service
from src.auth.sso.saml_service import SAMLService, get_saml_service
from src.types.sso import (
    FederatedIdentity,
    LogoutParams,
    OidcConfig,
    OidcParams,
    OrganizationSsoConfig,
    ProtocolParams,
    Saml2Config,
)

logger = logging.getLogger(__name__)


class FederationDispatcher:
    """
    Routes an authentication attempt to the validator for its protocol.
    """

    def __init__(
        self,
        oidc_service: Optional[OIDCService] = None,
        saml_service: Optional[SAMLService] = None,
    ):
        self.oidc_service = oidc_service or get_oidc_service()
        self.saml_service = saml_service or get_saml_service()

    async def authenticate(
        self,
        config: OrganizationSsoConfig,
        auth_data: str,
        params: Optional[ProtocolParams],
        organization_id: str,
    ) -> FederatedIdentity:
        """
        Validate an authorization code (OIDC) or SAML response (SAML2).

        Args:
            config: Parsed configuration of the resolved organization
            auth_data: Authorization code or Base64 SAML response
            params: OidcParams for OIDC; ignored for SAML2
            organization_id: Resolved organization

        Raises:
            InvalidRequest: auth_data empty, or OIDC without PKCE verifier /
                redirect URI
            UnsupportedProtocol: configuration section of an unknown kind
        """
        protocol = config.protocol.value
        if not auth_data or not auth_data.strip():
            raise InvalidRequest(
                "Authorization data is required",
                protocol=protocol,
                organization_id=organization_id,
            )

        protocol_config = config.protocol_config

        if isinstance(protocol_config, OidcConfig):
            oidc_params = self._require_oidc_params(params, organization_id)
            return await self.oidc_service.validate(
                auth_data.strip(), protocol_config, oidc_params, organization_id
            )

        if isinstance(protocol_config, Saml2Config):
            # XML-DSig verification is CPU bound; keep it off the event loop.
            return await asyncio.to_thread(
                self.saml_service.validate,
                auth_data,
                protocol_config,
                organization_id,
            )

        raise UnsupportedProtocol(
            protocol=protocol,
            organization_id=organization_id,
            internal_message=f"No validator for {type(protocol_config).__name__}",
        )

    @staticmethod
    def _require_oidc_params(
        params: Optional[ProtocolParams],
        organization_id: str,
    ) -> OidcParams:
        if not isinstance(params, OidcParams):
            raise InvalidRequest(
                "PKCE code verifier and redirect URI are required for OIDC",
                protocol="oidc",
                organization_id=organization_id,
            )
        if not params.code_verifier or not params.code_verifier.strip():
            raise InvalidRequest(
                "PKCE code verifier is required for OIDC",
                protocol="oidc",
                organization_id=organization_id,
            )
        if not params.redirect_uri or not params.redirect_uri.strip():
            raise InvalidRequest(
                "Redirect URI is required for OIDC",
                protocol="oidc",
                organization_id=organization_id,
            )
        return params

    async def logout(self, config: OrganizationSsoConfig, params: LogoutParams) -> bool:
        """
        Best-effort IdP logout. Never raises for IdP-side failures.

        Returns:
            True if the IdP was (or, for SAML2, would be) notified
        """
        protocol_config = config.protocol_config

        if isinstance(protocol_config, OidcConfig):
            return await self.oidc_service.logout(protocol_config, params)

        if isinstance(protocol_config, Saml2Config):
            return self.saml_service.logout(protocol_config, params)

        logger.warning("Logout requested for unsupported protocol %s", config.protocol)
        return False
