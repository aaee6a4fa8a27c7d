"""
SSO configuration administration.

Organization admins read and replace their tenant's SSO configuration here.
The client secret is write-only: it is accepted on update, retained when an
OIDC update omits it, and never returned.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from src.auth.sso.config_parser import RawConfig, parse_sso_config
from src.auth.sso.errors import (
    ConfigInvalid,
    InvalidIdpCertificate,
    OrganizationNotFound,
    PermissionDenied,
    SSOFederationError,
)
from src.auth.sso.saml_service import SAMLService
from src.organizations.audit_service import AuditService
from src.organizations.store import IdentityStore
from src.types.organization import Organization, OrganizationRole
from src.types.sso import OrganizationSsoConfig, Saml2Config

logger = logging.getLogger(__name__)


class SSOConfigService:
    """Admin-only read and update of an organization's SSO configuration."""

    def __init__(self, store: IdentityStore, audit_service: AuditService):
        self.store = store
        self.audit = audit_service

    async def get_config(
        self,
        organization_id: str,
        actor_user_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        """
        Return the redacted configuration, or None when SSO is not set up.

        Raises:
            OrganizationNotFound: unknown organization
            PermissionDenied: actor is not an ADMIN member
            ConfigInvalid: the stored document no longer parses
        """
        organization = await self._authorize(organization_id, actor_user_id)
        if organization.sso_config is None:
            return None
        return parse_sso_config(organization.sso_config, organization_id).public_dict()

    async def update_config(
        self,
        organization_id: str,
        raw_config: RawConfig,
        actor_user_id: Optional[str],
        request_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Validate and store a new configuration.

        Returns:
            The redacted stored configuration

        Raises:
            OrganizationNotFound: unknown organization
            PermissionDenied: actor is not an ADMIN member
            ConfigInvalid: the document does not validate, or the SAML
                certificate is not currently valid
        """
        organization = await self._authorize(organization_id, actor_user_id)
        previous = self._stored_config(organization)

        data = raw_config
        if isinstance(raw_config, Mapping):
            data = self._retain_client_secret(raw_config, previous)

        config = parse_sso_config(data, organization_id)

        if isinstance(config.protocol_config, Saml2Config):
            try:
                SAMLService.load_certificate(config.protocol_config.certificate)
            except InvalidIdpCertificate as e:
                raise ConfigInvalid(
                    "SAML certificate must be a currently valid X.509 certificate",
                    organization_id=organization_id,
                    internal_message=e.internal_message,
                ) from e

        await self.store.update_sso_config(organization_id, config.storage_dict())

        logger.info(
            "SSO configuration updated (org: %s, protocol: %s, actor: %s)",
            organization_id,
            config.protocol.value,
            actor_user_id,
        )

        public = config.public_dict()
        self.audit.log_sso_config_change(
            organization_id=organization_id,
            actor_user_id=actor_user_id,
            old_config=previous.public_dict() if previous else None,
            new_config=public,
            request_context=request_context,
        )
        return public

    async def _authorize(
        self,
        organization_id: str,
        actor_user_id: Optional[str],
    ) -> Organization:
        organization = await self.store.get_organization(organization_id)
        if organization is None:
            raise OrganizationNotFound(organization_id=organization_id)

        membership = None
        if actor_user_id:
            membership = await self.store.get_membership(organization_id, actor_user_id)

        if membership is None or membership.role != OrganizationRole.ADMIN:
            logger.warning(
                "SSO config access denied (org: %s, actor: %s)",
                organization_id,
                actor_user_id,
            )
            raise PermissionDenied(organization_id=organization_id)

        return organization

    @staticmethod
    def _stored_config(organization: Organization) -> Optional[OrganizationSsoConfig]:
        if organization.sso_config is None:
            return None
        try:
            return parse_sso_config(organization.sso_config, organization.id)
        except SSOFederationError as e:
            logger.warning(
                "Stored SSO configuration for org %s is invalid and will be replaced: %s",
                organization.id,
                e.internal_message,
            )
            return None

    @staticmethod
    def _retain_client_secret(
        raw_config: Mapping[str, Any],
        previous: Optional[OrganizationSsoConfig],
    ) -> Dict[str, Any]:
        """Fill an omitted OIDC clientSecret from the stored OIDC configuration."""
        data = dict(raw_config)
        oidc = data.get("oidc")
        if not isinstance(oidc, Mapping) or oidc.get("clientSecret"):
            return data
        if previous is None or previous.oidc is None:
            return data

        data["oidc"] = {
            **oidc,
            "clientSecret": previous.oidc.client_secret.get_secret_value(),
        }
        return data
