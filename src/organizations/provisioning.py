"""
Just-in-time provisioning of federated users and memberships.

Users are keyed by (identity_provider, identity_subject) where the provider
is namespaced per protocol (sso_oidc, sso_saml2). Both creation steps go
through the store's conflict-safe upserts, so simultaneous first logins
for one subject end up with a single user and a single membership.
"""

import logging
from dataclasses import dataclass

from src.auth.sso.errors import ProvisioningDisabled
from src.organizations.store import IdentityStore
from src.types.organization import OrganizationRole, OrgMembership, User
from src.types.sso import FederatedIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisioningResult:
    user: User
    membership: OrgMembership
    created_user: bool
    created_membership: bool


class JITProvisioner:
    """Idempotent find-or-create of the user and organization membership."""

    def __init__(self, store: IdentityStore):
        self.store = store

    async def provision(
        self,
        identity: FederatedIdentity,
        jit_enabled: bool = True,
    ) -> ProvisioningResult:
        """
        Bind a validated identity to a user and a membership.

        Args:
            identity: Output of a successful protocol validation
            jit_enabled: When False, only existing members may log in

        Raises:
            ProvisioningDisabled: JIT is off and the user or membership is missing
        """
        provider = identity.protocol.identity_provider
        organization_id = identity.organization_id

        user = await self.store.find_user_by_identity(provider, identity.subject)
        created_user = False

        if user is None:
            if not jit_enabled:
                raise ProvisioningDisabled(
                    protocol=identity.protocol.value,
                    organization_id=organization_id,
                    internal_message=f"No user for {provider}/{identity.subject}",
                )
            user, created_user = await self.store.create_user_if_absent(
                email=identity.email,
                provider=provider,
                subject=identity.subject,
                display_name=identity.display_name,
            )

        if not created_user:
            user = await self._refresh_profile(user, identity)

        membership = await self.store.get_membership(organization_id, user.id)
        created_membership = False

        if membership is None:
            if not jit_enabled:
                raise ProvisioningDisabled(
                    protocol=identity.protocol.value,
                    organization_id=organization_id,
                    internal_message=f"User {user.id} is not a member",
                )
            membership, created_membership = await self.store.create_membership_if_absent(
                organization_id, user.id, OrganizationRole.MEMBER
            )

        if created_user or created_membership:
            logger.info(
                "JIT provisioned (org: %s, user: %s, new_user: %s, new_membership: %s)",
                organization_id,
                user.id,
                created_user,
                created_membership,
            )

        return ProvisioningResult(
            user=user,
            membership=membership,
            created_user=created_user,
            created_membership=created_membership,
        )

    async def _refresh_profile(self, user: User, identity: FederatedIdentity) -> User:
        """Write back an email or display name the IdP now asserts differently."""
        if user.email == identity.email and user.display_name == identity.display_name:
            return user

        logger.info("Refreshing profile for user %s from IdP assertion", user.id)
        return await self.store.update_user_profile(
            user.id, identity.email, identity.display_name
        )
