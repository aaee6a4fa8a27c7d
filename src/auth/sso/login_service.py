"""
SSO login pipeline.

Runs one federated login end to end:

    email -> tenant -> stored config -> protocol validator
          -> domain binding -> JIT provisioning -> audit

The organization is always resolved from the email domain; the pipeline
accepts no organization id from the caller. Every failure is logged once
here with its error code, protocol and organization.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.auth.sso.config_parser import parse_sso_config
from src.auth.sso.dispatcher import FederationDispatcher
from src.auth.sso.errors import (
    ConfigInvalid,
    InvalidRequest,
    SSOFederationError,
    SSONotConfigured,
    UnsupportedProtocol,
)
from src.organizations.audit_service import AuditService
from src.organizations.provisioning import JITProvisioner
from src.organizations.store import IdentityStore
from src.organizations.tenant_resolver import TenantResolver, verify_domain_binding
from src.types.organization import Organization, OrgMembership, User
from src.types.sso import (
    FederatedIdentity,
    LogoutParams,
    OidcParams,
    OrganizationSsoConfig,
    SSOProtocol,
    is_protocol_supported,
    supported_protocols,
)
from src.utils.logging import Timer, set_request_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSOLoginResult:
    identity: FederatedIdentity
    organization: Organization
    user: User
    membership: OrgMembership
    created_user: bool


class SSOLoginService:
    """
    Federated login and logout for tenants resolved by email domain.
    """

    def __init__(
        self,
        store: IdentityStore,
        audit_service: AuditService,
        dispatcher: Optional[FederationDispatcher] = None,
    ):
        self.store = store
        self.audit = audit_service
        self.dispatcher = dispatcher or FederationDispatcher()
        self.resolver = TenantResolver(store)
        self.provisioner = JITProvisioner(store)

    async def login(
        self,
        email: str,
        auth_data: str,
        protocol: Optional[str] = None,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        request_context: Optional[Dict[str, Any]] = None,
    ) -> SSOLoginResult:
        """
        Authenticate an authorization code or SAML response.

        Args:
            email: Address the user typed; selects the organization
            auth_data: Authorization code (OIDC) or Base64 SAMLResponse
            protocol: Protocol the client believes it is using, if any
            code_verifier: PKCE verifier (OIDC)
            redirect_uri: Redirect URI of the authorization request (OIDC)
            request_context: IP / user agent / request id for the audit trail

        Raises:
            SSOFederationError subclasses; none of them is retriable
        """
        organization_id: Optional[str] = None
        try:
            declared = self._declared_protocol(protocol)
            if not auth_data or not auth_data.strip():
                raise InvalidRequest("Authorization data is required")

            organization = await self.resolver.resolve(email)
            organization_id = organization.id
            set_request_context(organization_id=organization_id)

            config = self._load_config(organization)
            set_request_context(protocol=config.protocol.value)

            if declared is not None and declared is not config.protocol:
                raise UnsupportedProtocol(
                    protocol=declared.value,
                    organization_id=organization_id,
                    internal_message=(
                        f"Client declared {declared.value}, organization uses {config.protocol.value}"
                    ),
                )

            params = None
            if config.protocol is SSOProtocol.OIDC and code_verifier and redirect_uri:
                params = OidcParams(code_verifier=code_verifier, redirect_uri=redirect_uri)

            with Timer("sso_protocol_validation", logger):
                identity = await self.dispatcher.authenticate(
                    config, auth_data, params, organization_id
                )

            if config.domain_verification_required is False:
                logger.debug(
                    "domainVerificationRequired is off for org %s; domain binding still enforced",
                    organization_id,
                )
            verify_domain_binding(identity, organization.domain)

            provisioned = await self.provisioner.provision(
                identity, jit_enabled=config.jit_provisioning_enabled
            )

        except SSOFederationError as e:
            e.with_context(organization_id=organization_id)
            logger.warning(
                "SSO login failed: %s",
                e.internal_message or e.message,
                extra=e.log_context(),
            )
            raise

        self.audit.log_sso_login(
            organization_id=organization.id,
            user_id=provisioned.user.id,
            protocol=identity.protocol.value,
            created_user=provisioned.created_user,
            created_membership=provisioned.created_membership,
            request_context=request_context,
        )

        logger.info(
            "SSO login succeeded (org: %s, user: %s, protocol: %s)",
            organization.id,
            provisioned.user.id,
            identity.protocol.value,
        )

        return SSOLoginResult(
            identity=identity,
            organization=organization,
            user=provisioned.user,
            membership=provisioned.membership,
            created_user=provisioned.created_user,
        )

    async def logout(self, email: str, params: LogoutParams) -> bool:
        """
        Best-effort IdP logout for the organization owning the email domain.

        Returns False when the tenant has no usable SSO configuration or the
        IdP could not be notified.

        Raises:
            InvalidEmail, TenantNotFound
        """
        organization = await self.resolver.resolve(email)
        if organization.sso_config is None:
            return False

        try:
            config = parse_sso_config(organization.sso_config, organization.id)
        except SSOFederationError as e:
            logger.warning(
                "Skipping IdP logout: %s",
                e.internal_message or e.message,
                extra=e.log_context(),
            )
            return False

        return await self.dispatcher.logout(config, params)

    @staticmethod
    def _declared_protocol(protocol: Optional[str]) -> Optional[SSOProtocol]:
        if protocol is None or not protocol.strip():
            return None
        if not is_protocol_supported(protocol):
            raise UnsupportedProtocol(
                details={"supported_protocols": supported_protocols()},
                internal_message=f"Client declared protocol {protocol!r}",
            )
        return SSOProtocol(protocol.strip())

    @staticmethod
    def _load_config(organization: Organization) -> OrganizationSsoConfig:
        if organization.sso_config is None:
            raise SSONotConfigured(organization_id=organization.id)
        try:
            return parse_sso_config(organization.sso_config, organization.id)
        except ConfigInvalid as e:
            # Field-level problems are for org admins; end users get the bare code.
            raise ConfigInvalid(
                e.message,
                organization_id=organization.id,
                internal_message=e.internal_message,
            ) from e

