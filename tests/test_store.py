"""
Tests for the PostgreSQL identity store.

The asyncpg helpers in src.db are patched; these tests check the
conflict-safe upsert flow and row mapping, not the SQL engine.
"""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from src import db
from src.organizations.store import PostgresIdentityStore
from src.types.organization import AuditAction, AuditLogCreate, OrganizationRole, ResourceType

CREATED = datetime(2026, 1, 1, tzinfo=timezone.utc)

USER_ROW = {
    "id": "5b1f3c2e-0000-4000-8000-000000000001",
    "email": "alice@acme.com",
    "identity_provider": "sso_oidc",
    "identity_subject": "u1",
    "display_name": "Alice",
    "created_at": CREATED,
    "updated_at": CREATED,
}

MEMBERSHIP_ROW = {
    "organization_id": "5b1f3c2e-0000-4000-8000-0000000000aa",
    "user_id": USER_ROW["id"],
    "role": "MEMBER",
    "joined_at": CREATED,
}


class TestUserUpsert:
    """Tests for create_user_if_absent()."""

    @pytest.mark.asyncio
    async def test_inserted(self):
        with patch("src.organizations.store.db.fetchrow", AsyncMock(return_value=USER_ROW)) as fetchrow:
            user, created = await PostgresIdentityStore().create_user_if_absent(
                "alice@acme.com", "sso_oidc", "u1", "Alice"
            )

        assert created is True
        assert user.id == USER_ROW["id"]
        assert "ON CONFLICT (identity_provider, identity_subject) DO NOTHING" in fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_conflict_reads_back(self):
        """A concurrent insert wins; the stored row is returned."""
        with patch(
            "src.organizations.store.db.fetchrow", AsyncMock(side_effect=[None, USER_ROW])
        ):
            user, created = await PostgresIdentityStore().create_user_if_absent(
                "alice@acme.com", "sso_oidc", "u1", "Alice"
            )

        assert created is False
        assert user.identity_subject == "u1"


class TestMembershipUpsert:
    @pytest.mark.asyncio
    async def test_conflict_keeps_existing_role(self):
        admin_row = {**MEMBERSHIP_ROW, "role": "ADMIN"}
        with patch(
            "src.organizations.store.db.fetchrow", AsyncMock(side_effect=[None, admin_row])
        ):
            membership, created = await PostgresIdentityStore().create_membership_if_absent(
                MEMBERSHIP_ROW["organization_id"], USER_ROW["id"]
            )

        assert created is False
        assert membership.role is OrganizationRole.ADMIN


class TestOrganizations:
    @pytest.mark.asyncio
    async def test_sso_config_json_text_decoded(self):
        row = {
            "id": MEMBERSHIP_ROW["organization_id"],
            "name": "Acme",
            "domain": "acme.com",
            "sso_config": json.dumps({"protocol": "oidc"}),
        }
        with patch("src.organizations.store.db.fetchrow", AsyncMock(return_value=row)):
            organization = await PostgresIdentityStore().find_organization_by_domain("acme.com")

        assert organization.sso_config == {"protocol": "oidc"}

    @pytest.mark.asyncio
    async def test_unknown_domain(self):
        with patch("src.organizations.store.db.fetchrow", AsyncMock(return_value=None)):
            assert await PostgresIdentityStore().find_organization_by_domain("initech.com") is None

    @pytest.mark.asyncio
    async def test_update_sso_config_serializes(self):
        with patch("src.organizations.store.db.execute", AsyncMock()) as execute:
            await PostgresIdentityStore().update_sso_config("org-1", {"protocol": "saml2"})

        assert json.loads(execute.call_args.args[2]) == {"protocol": "saml2"}


class TestAudit:
    @pytest.mark.asyncio
    async def test_insert_returns_id(self):
        entry = AuditLogCreate(
            action=AuditAction.SSO_LOGIN,
            resource_type=ResourceType.USER,
            metadata={"protocol": "oidc"},
        )
        with patch("src.organizations.store.db.fetchrow", AsyncMock(return_value={"id": "audit-1"})) as fetchrow:
            assert await PostgresIdentityStore().insert_audit_log(entry) == "audit-1"

        assert fetchrow.call_args.args[3] == "SSO_LOGIN"


class TestPool:
    """Tests for lazy pool creation in src.db."""

    @pytest.mark.asyncio
    async def test_concurrent_first_callers_share_one_pool(self):
        pool = object()

        async def slow_create_pool(**kwargs):
            await asyncio.sleep(0.01)
            return pool

        create_pool = AsyncMock(side_effect=slow_create_pool)
        with patch.object(db, "get_database_url", return_value="postgresql://localhost/sso"), patch(
            "src.db.asyncpg.create_pool", create_pool
        ):
            try:
                results = await asyncio.gather(*(db.get_pool() for _ in range(5)))
            finally:
                db._pool = None

        assert all(result is pool for result in results)
        assert create_pool.await_count == 1
