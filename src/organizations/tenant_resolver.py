"""
Tenant resolution by email domain.

The organization for an SSO login is always derived from the domain of the
email address. Client-supplied organization ids are never consulted.
"""

import logging
from typing import Optional

from src.auth.sso.errors import DomainMismatch, InvalidEmail, TenantNotFound
from src.organizations.store import IdentityStore
from src.types.organization import Organization
from src.types.sso import FederatedIdentity

logger = logging.getLogger(__name__)


def extract_domain(email: Optional[str]) -> str:
    """
    Return the lower-cased text after the last '@'.

    Raises:
        InvalidEmail: no '@', or nothing after it
    """
    if not email or "@" not in email:
        raise InvalidEmail(internal_message="Email has no '@'")

    domain = email.rsplit("@", 1)[1].strip().lower()
    if not domain:
        raise InvalidEmail(internal_message="Email has an empty domain")
    return domain


def verify_domain_binding(identity: FederatedIdentity, expected_domain: str) -> None:
    """
    Check the IdP-asserted email against the domain that selected the tenant.

    Raises:
        DomainMismatch: the domains differ (case-insensitive)
    """
    try:
        asserted = extract_domain(identity.email)
    except InvalidEmail as e:
        raise DomainMismatch(
            protocol=identity.protocol.value,
            organization_id=identity.organization_id,
            internal_message="Asserted email has no domain",
        ) from e

    if asserted != expected_domain.strip().lower():
        raise DomainMismatch(
            protocol=identity.protocol.value,
            organization_id=identity.organization_id,
            internal_message=f"Asserted domain {asserted} != tenant domain {expected_domain}",
        )


class TenantResolver:
    """Maps an email address to the single organization owning its domain."""

    def __init__(self, store: IdentityStore):
        self.store = store

    async def resolve(self, email: str) -> Organization:
        """
        Resolve the organization for an email address.

        Raises:
            InvalidEmail: the address has no usable domain
            TenantNotFound: no organization claims the domain
        """
        domain = extract_domain(email)
        organization = await self.store.find_organization_by_domain(domain)
        if organization is None:
            logger.info("No organization for domain %s", domain)
            raise TenantNotFound(internal_message=f"No organization for domain {domain}")
        return organization
