"""
RBAC data access

The dynamic evaluator and the compatibility router depend on these
protocols rather than on sessions or models directly. The SQLAlchemy
implementations are what the application wires in; tests pass fakes.
"""
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from sqlalchemy import select, func, or_

from pharmacare_authz.core.database import get_db_session
from pharmacare_authz.models.role import Role
from pharmacare_authz.models.user import User
from pharmacare_authz.models.user_role import UserRole


class RoleRepository(Protocol):
    """Lookups needed to evaluate role-assignment permissions."""

    async def get_active_roles_for_user(self, user_id: int) -> List[Role]:
        """Active roles from active, non-expired assignments."""
        ...

    async def get_role(self, role_id: int) -> Optional[Role]:
        ...


class UserDirectory(Protocol):
    """Aggregate counts for the migration readiness report."""

    async def count_users(self) -> int:
        ...

    async def count_migrated_users(self) -> int:
        """Users stamped with role_last_modified_at."""
        ...

    async def count_users_with_assigned_roles(self) -> int:
        ...

    async def count_users_with_direct_permissions(self) -> int:
        ...

    async def count_orphaned_role_assignments(self) -> int:
        """Active assignments whose user_id matches no user."""
        ...


def _non_empty_json_list(column):
    # json_array_length is available on both Postgres and SQLite
    return func.coalesce(func.json_array_length(column), 0) > 0


class SqlRoleRepository:
    """RoleRepository backed by rbac_roles / rbac_user_roles."""

    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory or get_db_session

    async def get_active_roles_for_user(self, user_id: int) -> List[Role]:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Role)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(
                    UserRole.user_id == user_id,
                    UserRole.is_active == True,
                    or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
                    Role.is_active == True,
                )
                .order_by(Role.id)
            )
            return list(result.scalars().all())

    async def get_role(self, role_id: int) -> Optional[Role]:
        async with self._session_factory() as db:
            result = await db.execute(select(Role).where(Role.id == role_id))
            return result.scalar_one_or_none()


class SqlUserDirectory:
    """UserDirectory backed by the users table."""

    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory or get_db_session

    async def _scalar(self, query) -> int:
        async with self._session_factory() as db:
            result = await db.execute(query)
            return int(result.scalar() or 0)

    async def count_users(self) -> int:
        return await self._scalar(select(func.count(User.id)))

    async def count_migrated_users(self) -> int:
        return await self._scalar(
            select(func.count(User.id)).where(User.role_last_modified_at.isnot(None))
        )

    async def count_users_with_assigned_roles(self) -> int:
        return await self._scalar(
            select(func.count(User.id)).where(_non_empty_json_list(User.assigned_roles))
        )

    async def count_users_with_direct_permissions(self) -> int:
        return await self._scalar(
            select(func.count(User.id)).where(_non_empty_json_list(User.direct_permissions))
        )

    async def count_orphaned_role_assignments(self) -> int:
        return await self._scalar(
            select(func.count(UserRole.id)).where(
                UserRole.is_active == True,
                ~UserRole.user_id.in_(select(User.id)),
            )
        )
