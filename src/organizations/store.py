"""
Identity store: organizations, users, memberships and audit rows.

The federation pipeline talks to this interface only. Creation methods are
conflict-safe upserts: INSERT ... ON CONFLICT DO NOTHING followed by a
refetch, so concurrent first logins converge on one row without locks.

Implementations:
- PostgresIdentityStore: raw SQL over the asyncpg pool in src.db
- InMemoryIdentityStore: same semantics, for development and tests
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from src import db
from src.types.organization import (
    AuditLogCreate,
    AuditLogEntry,
    Organization,
    OrganizationRole,
    OrgMembership,
    User,
)

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Persistence contract used by tenant resolution, provisioning and audit."""

    # Organizations

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    @abstractmethod
    async def find_organization_by_domain(self, domain: str) -> Optional[Organization]:
        """Exact match on the lower-cased unique domain."""

    @abstractmethod
    async def update_sso_config(self, organization_id: str, sso_config: Dict[str, Any]) -> None:
        ...

    # Users

    @abstractmethod
    async def find_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        ...

    @abstractmethod
    async def create_user_if_absent(
        self,
        email: str,
        provider: str,
        subject: str,
        display_name: str,
    ) -> Tuple[User, bool]:
        """
        Insert the user unless (provider, subject) exists.

        Returns:
            (user, created) where user is the stored row either way
        """

    @abstractmethod
    async def update_user_profile(self, user_id: str, email: str, display_name: str) -> User:
        ...

    # Memberships

    @abstractmethod
    async def get_membership(self, organization_id: str, user_id: str) -> Optional[OrgMembership]:
        ...

    @abstractmethod
    async def create_membership_if_absent(
        self,
        organization_id: str,
        user_id: str,
        role: OrganizationRole = OrganizationRole.MEMBER,
    ) -> Tuple[OrgMembership, bool]:
        """Insert the membership unless it exists; an existing row is returned untouched."""

    # Audit

    @abstractmethod
    async def insert_audit_log(self, entry: AuditLogCreate) -> str:
        ...


# =============================================================================
# PostgreSQL
# =============================================================================


def _user_from_row(row) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        identity_provider=row["identity_provider"],
        identity_subject=row["identity_subject"],
        display_name=row["display_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _membership_from_row(row) -> OrgMembership:
    return OrgMembership(
        organization_id=str(row["organization_id"]),
        user_id=str(row["user_id"]),
        role=OrganizationRole(row["role"]),
        joined_at=row["joined_at"],
    )


def _organization_from_row(row) -> Organization:
    sso_config = row["sso_config"]
    if isinstance(sso_config, str):
        sso_config = json.loads(sso_config)
    return Organization(
        id=str(row["id"]),
        name=row["name"],
        domain=row["domain"],
        sso_config=sso_config,
    )


class PostgresIdentityStore(IdentityStore):
    """asyncpg-backed store; schema in migrations/001_sso_federation.sql."""

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        row = await db.fetchrow(
            "SELECT id, name, domain, sso_config FROM organizations WHERE id = $1::uuid",
            organization_id,
        )
        return _organization_from_row(row) if row else None

    async def find_organization_by_domain(self, domain: str) -> Optional[Organization]:
        row = await db.fetchrow(
            "SELECT id, name, domain, sso_config FROM organizations WHERE domain = $1",
            domain,
        )
        return _organization_from_row(row) if row else None

    async def update_sso_config(self, organization_id: str, sso_config: Dict[str, Any]) -> None:
        await db.execute(
            """
            UPDATE organizations
               SET sso_config = $2::jsonb, updated_at = now()
             WHERE id = $1::uuid
            """,
            organization_id,
            json.dumps(sso_config),
        )

    async def find_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        row = await db.fetchrow(
            """
            SELECT id, email, identity_provider, identity_subject, display_name,
                   created_at, updated_at
              FROM users
             WHERE identity_provider = $1 AND identity_subject = $2
            """,
            provider,
            subject,
        )
        return _user_from_row(row) if row else None

    async def create_user_if_absent(
        self,
        email: str,
        provider: str,
        subject: str,
        display_name: str,
    ) -> Tuple[User, bool]:
        row = await db.fetchrow(
            """
            INSERT INTO users (email, identity_provider, identity_subject, display_name)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (identity_provider, identity_subject) DO NOTHING
            RETURNING id, email, identity_provider, identity_subject, display_name,
                      created_at, updated_at
            """,
            email,
            provider,
            subject,
            display_name,
        )
        if row:
            return _user_from_row(row), True

        existing = await self.find_user_by_identity(provider, subject)
        if existing is None:
            raise RuntimeError(f"User {provider}/{subject} conflicted but cannot be read back")
        return existing, False

    async def update_user_profile(self, user_id: str, email: str, display_name: str) -> User:
        row = await db.fetchrow(
            """
            UPDATE users
               SET email = $2, display_name = $3, updated_at = now()
             WHERE id = $1::uuid
            RETURNING id, email, identity_provider, identity_subject, display_name,
                      created_at, updated_at
            """,
            user_id,
            email,
            display_name,
        )
        if row is None:
            raise RuntimeError(f"User {user_id} vanished during profile update")
        return _user_from_row(row)

    async def get_membership(self, organization_id: str, user_id: str) -> Optional[OrgMembership]:
        row = await db.fetchrow(
            """
            SELECT organization_id, user_id, role, joined_at
              FROM org_memberships
             WHERE organization_id = $1::uuid AND user_id = $2::uuid
            """,
            organization_id,
            user_id,
        )
        return _membership_from_row(row) if row else None

    async def create_membership_if_absent(
        self,
        organization_id: str,
        user_id: str,
        role: OrganizationRole = OrganizationRole.MEMBER,
    ) -> Tuple[OrgMembership, bool]:
        row = await db.fetchrow(
            """
            INSERT INTO org_memberships (organization_id, user_id, role)
            VALUES ($1::uuid, $2::uuid, $3)
            ON CONFLICT (organization_id, user_id) DO NOTHING
            RETURNING organization_id, user_id, role, joined_at
            """,
            organization_id,
            user_id,
            role.value,
        )
        if row:
            return _membership_from_row(row), True

        existing = await self.get_membership(organization_id, user_id)
        if existing is None:
            raise RuntimeError(
                f"Membership {organization_id}/{user_id} conflicted but cannot be read back"
            )
        return existing, False

    async def insert_audit_log(self, entry: AuditLogCreate) -> str:
        row = await db.fetchrow(
            """
            INSERT INTO audit_logs (organization_id, user_id, action, resource_type,
                                    resource_id, ip_address, user_agent, metadata)
            VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8::jsonb)
            RETURNING id
            """,
            entry.organization_id,
            entry.user_id,
            entry.action.value,
            entry.resource_type.value,
            entry.resource_id,
            entry.ip_address,
            entry.user_agent,
            json.dumps(entry.metadata, default=str),
        )
        return str(row["id"])


# =============================================================================
# In-memory
# =============================================================================


class InMemoryIdentityStore(IdentityStore):
    """
    Dict-backed store with the same uniqueness rules as the SQL schema.

    Every call yields to the event loop first, so concurrent callers
    interleave the way they would around real I/O; each check-and-insert
    runs without an await in between and is therefore atomic.
    """

    def __init__(self):
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.memberships: Dict[Tuple[str, str], OrgMembership] = {}
        self.audit_logs: List[AuditLogEntry] = []

    def add_organization(
        self,
        domain: str,
        sso_config: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Organization:
        """Seed an organization (creation is outside the federation flow)."""
        organization = Organization(
            id=organization_id or str(uuid.uuid4()),
            name=name,
            domain=domain,
            sso_config=sso_config,
        )
        if any(o.domain == organization.domain for o in self.organizations.values()):
            raise ValueError(f"Domain {organization.domain} already belongs to an organization")
        self.organizations[organization.id] = organization
        return organization

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        await asyncio.sleep(0)
        return self.organizations.get(organization_id)

    async def find_organization_by_domain(self, domain: str) -> Optional[Organization]:
        await asyncio.sleep(0)
        for organization in self.organizations.values():
            if organization.domain == domain:
                return organization
        return None

    async def update_sso_config(self, organization_id: str, sso_config: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        organization = self.organizations[organization_id]
        self.organizations[organization_id] = organization.model_copy(
            update={"sso_config": sso_config}
        )

    async def find_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        await asyncio.sleep(0)
        return self._user_by_identity(provider, subject)

    def _user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        for user in self.users.values():
            if user.identity_provider == provider and user.identity_subject == subject:
                return user
        return None

    async def create_user_if_absent(
        self,
        email: str,
        provider: str,
        subject: str,
        display_name: str,
    ) -> Tuple[User, bool]:
        await asyncio.sleep(0)
        existing = self._user_by_identity(provider, subject)
        if existing is not None:
            return existing, False

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            identity_provider=provider,
            identity_subject=subject,
            display_name=display_name,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        return user, True

    async def update_user_profile(self, user_id: str, email: str, display_name: str) -> User:
        await asyncio.sleep(0)
        user = self.users[user_id].model_copy(
            update={
                "email": email,
                "display_name": display_name,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self.users[user_id] = user
        return user

    async def get_membership(self, organization_id: str, user_id: str) -> Optional[OrgMembership]:
        await asyncio.sleep(0)
        return self.memberships.get((organization_id, user_id))

    async def create_membership_if_absent(
        self,
        organization_id: str,
        user_id: str,
        role: OrganizationRole = OrganizationRole.MEMBER,
    ) -> Tuple[OrgMembership, bool]:
        await asyncio.sleep(0)
        key = (organization_id, user_id)
        existing = self.memberships.get(key)
        if existing is not None:
            return existing, False

        membership = OrgMembership(
            organization_id=organization_id,
            user_id=user_id,
            role=role,
            joined_at=datetime.now(timezone.utc),
        )
        self.memberships[key] = membership
        return membership, True

    async def insert_audit_log(self, entry: AuditLogCreate) -> str:
        await asyncio.sleep(0)
        stored = AuditLogEntry(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            **entry.model_dump(),
        )
        self.audit_logs.append(stored)
        return stored.id
