"""
Organizations module: tenants, federated users and memberships.

This module provides:
- Tenant resolution by email domain
- Just-in-time user and membership provisioning
- SSO configuration administration
- Audit logging for compliance

Usage:
    from src.organizations import InMemoryIdentityStore, TenantResolver

    store = InMemoryIdentityStore()
    store.add_organization("acme.com", sso_config)

    organization = await TenantResolver(store).resolve("alice@acme.com")
"""

from src.organizations.audit_service import (
    AuditService,
    build_request_context,
    extract_ip_address,
    get_audit_service,
    init_audit_service,
)
from src.organizations.provisioning import JITProvisioner, ProvisioningResult
from src.organizations.sso_config_service import SSOConfigService
from src.organizations.store import (
    IdentityStore,
    InMemoryIdentityStore,
    PostgresIdentityStore,
)
from src.organizations.tenant_resolver import (
    TenantResolver,
    extract_domain,
    verify_domain_binding,
)

__all__ = [
    # Store
    "IdentityStore",
    "InMemoryIdentityStore",
    "PostgresIdentityStore",
    # Federation
    "TenantResolver",
    "extract_domain",
    "verify_domain_binding",
    "JITProvisioner",
    "ProvisioningResult",
    # Administration
    "SSOConfigService",
    # Audit
    "AuditService",
    "build_request_context",
    "extract_ip_address",
    "get_audit_service",
    "init_audit_service",
]
