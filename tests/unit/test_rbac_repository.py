"""
Tests for the SQL-backed role repository and user directory.
"""
from datetime import datetime, timedelta, timezone

import pytest

from pharmacare_authz.models.role import SYSTEM_ROLES, Role
from pharmacare_authz.models.user import User
from pharmacare_authz.models.user_role import UserRole
from pharmacare_authz.services.rbac_repository import SqlRoleRepository, SqlUserDirectory


async def seed_system_roles(session_factory):
    async with session_factory() as db:
        for index, fields in enumerate(SYSTEM_ROLES, start=1):
            db.add(Role(id=index, **fields))


def role_id(name):
    return next(i for i, fields in enumerate(SYSTEM_ROLES, start=1) if fields["name"] == name)


class TestUserRoleExpiry:

    def test_no_expiry(self):
        assert not UserRole(user_id=1, role_id=1, expires_at=None).is_expired

    def test_past_expiry(self):
        assert UserRole(user_id=1, role_id=1, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)).is_expired

    def test_naive_future_expiry(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        assert not UserRole(user_id=1, role_id=1, expires_at=naive).is_expired


class TestSqlRoleRepository:

    @pytest.mark.asyncio
    async def test_get_role(self, session_factory):
        await seed_system_roles(session_factory)
        repository = SqlRoleRepository(session_factory=session_factory)

        role = await repository.get_role(role_id("pharmacist"))
        assert role.name == "pharmacist"
        assert role.grants("mtr.create")
        assert await repository.get_role(999) is None

    @pytest.mark.asyncio
    async def test_active_roles_skip_revoked_expired_and_inactive(self, session_factory):
        await seed_system_roles(session_factory)
        now = datetime.now(timezone.utc)
        async with session_factory() as db:
            db.add(UserRole(user_id=7, role_id=role_id("pharmacist"), is_active=True))
            db.add(UserRole(user_id=7, role_id=role_id("technician"), is_active=False))
            db.add(UserRole(user_id=7, role_id=role_id("assistant"), is_active=True,
                            expires_at=now - timedelta(days=1)))
            db.add(UserRole(user_id=7, role_id=role_id("pharmacy_owner"), is_active=True,
                            expires_at=now + timedelta(days=1)))
            db.add(UserRole(user_id=8, role_id=role_id("technician"), is_active=True))

        async with session_factory() as db:
            owner = await db.get(Role, role_id("pharmacy_owner"))
            owner.is_active = False

        repository = SqlRoleRepository(session_factory=session_factory)
        roles = await repository.get_active_roles_for_user(7)

        assert [role.name for role in roles] == ["pharmacist"]

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_roles(self, session_factory):
        await seed_system_roles(session_factory)
        repository = SqlRoleRepository(session_factory=session_factory)
        assert await repository.get_active_roles_for_user(42) == []


class TestSqlUserDirectory:

    @pytest.mark.asyncio
    async def test_counts(self, session_factory):
        await seed_system_roles(session_factory)
        migrated_at = datetime.now(timezone.utc)
        async with session_factory() as db:
            db.add(User(id=1, email="a@pharmacy.test", system_role="pharmacist", status="active",
                        assigned_roles=[role_id("pharmacist")], role_last_modified_at=migrated_at))
            db.add(User(id=2, email="b@pharmacy.test", system_role="pharmacy_team", status="active",
                        direct_permissions=["patient.read"], role_last_modified_at=migrated_at))
            db.add(User(id=3, email="c@pharmacy.test", system_role="pharmacy_team", status="active",
                        assigned_roles=[], direct_permissions=None))
            db.add(UserRole(user_id=1, role_id=role_id("pharmacist"), is_active=True))
            db.add(UserRole(user_id=99, role_id=role_id("assistant"), is_active=True))
            db.add(UserRole(user_id=98, role_id=role_id("assistant"), is_active=False))

        directory = SqlUserDirectory(session_factory=session_factory)

        assert await directory.count_users() == 3
        assert await directory.count_migrated_users() == 2
        assert await directory.count_users_with_assigned_roles() == 1
        assert await directory.count_users_with_direct_permissions() == 1
        assert await directory.count_orphaned_role_assignments() == 1

    @pytest.mark.asyncio
    async def test_empty_database(self, session_factory):
        directory = SqlUserDirectory(session_factory=session_factory)
        assert await directory.count_users() == 0
        assert await directory.count_orphaned_role_assignments() == 0
