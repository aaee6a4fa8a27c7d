"""
Organization, user, membership and audit type definitions.

This module defines Pydantic models for:
- Organizations keyed by their unique email domain
- Users created by federated login
- Organization memberships with roles
- Audit log entries
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class OrganizationRole(str, Enum):
    """
    Organization member roles.

    - admin: Manage members and SSO settings
    - member: Regular access, the role granted by JIT provisioning
    """
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class AuditAction(str, Enum):
    """Audit log action types."""
    SSO_LOGIN = "SSO_LOGIN"
    SSO_CONFIG_UPDATED = "SSO_CONFIG_UPDATED"


class ResourceType(str, Enum):
    """Types of resources that can be audited."""
    USER = "USER"
    ORGANIZATION = "ORGANIZATION"


# =============================================================================
# Organization Models
# =============================================================================


class Organization(BaseModel):
    """
    Tenant owning an email domain.

    sso_config holds the stored configuration document as-is; it is turned
    into an OrganizationSsoConfig by the config parser on every login.
    """
    id: str = Field(..., description="Unique identifier (UUID)")
    name: Optional[str] = Field(default=None, max_length=255)
    domain: str = Field(..., min_length=1, max_length=255)
    sso_config: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().lower()


# =============================================================================
# User Models
# =============================================================================


class User(BaseModel):
    """User account bound to one (identity_provider, identity_subject) pair."""
    id: str
    email: str
    identity_provider: str
    identity_subject: str
    display_name: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Organization Member Models
# =============================================================================


class OrgMembership(BaseModel):
    """Unique (organization_id, user_id) membership."""
    organization_id: str
    user_id: str
    role: OrganizationRole = OrganizationRole.MEMBER
    joined_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Audit Log Models
# =============================================================================


class AuditLogCreate(BaseModel):
    """Request model for creating an audit log entry."""
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    action: AuditAction
    resource_type: ResourceType
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditLogEntry(AuditLogCreate):
    """
    Audit log entry model.

    Represents a single audit event for compliance and security monitoring.
    """
    id: str = Field(..., description="Audit log entry ID (UUID)")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
