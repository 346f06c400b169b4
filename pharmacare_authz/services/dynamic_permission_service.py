"""
Dynamic Permission Service

Role-assignment based evaluator used by users migrated off the static
matrix. Decision order:

1. Super admin -> allow
2. Status gate (suspended, rejected license)
3. Explicit denial on the user -> deny
4. Direct grant on the user -> allow
5. Grants from assigned roles, then their parent chain
6. Otherwise deny
"""
import logging
from typing import Iterable, Optional, Set

from pharmacare_authz.core.config import settings
from pharmacare_authz.core.exceptions import DynamicEvaluationError
from pharmacare_authz.models.role import Role, permission_granted
from pharmacare_authz.models.user import SystemRole, UserStatus, LicenseStatus
from pharmacare_authz.services.permission_types import (
    DenyReason,
    PermissionResult,
    ResultSource,
    WorkspaceContext,
)
from pharmacare_authz.services.rbac_repository import RoleRepository

logger = logging.getLogger(__name__)

# Parent chains longer than this are treated as misconfigured
MAX_INHERITANCE_DEPTH = 10


class DynamicPermissionService:
    """
    Evaluator for explicitly assigned roles and per-user grants.

    Args:
        role_repository: Source of a user's active roles and of parent roles
        licensed_roles: System roles that require an approved license
    """

    def __init__(self, role_repository: RoleRepository, licensed_roles: Optional[Iterable[str]] = None):
        self.role_repository = role_repository
        self.licensed_roles = frozenset(
            licensed_roles if licensed_roles is not None else settings.RBAC_LICENSED_ROLES
        )

    async def check_permission(self, user, action: str, context: Optional[WorkspaceContext] = None) -> PermissionResult:
        """
        Evaluate action against the user's assigned roles and grants.

        Raises:
            DynamicEvaluationError: If role data cannot be read
        """
        if user.system_role == SystemRole.SUPER_ADMIN:
            return PermissionResult(allowed=True, source=ResultSource.SUPER_ADMIN)

        if user.status == UserStatus.SUSPENDED:
            return PermissionResult(allowed=False, reason=DenyReason.ACCOUNT_SUSPENDED, source=ResultSource.NONE)

        if user.system_role in self.licensed_roles and user.license_status == LicenseStatus.REJECTED:
            return PermissionResult(allowed=False, reason=DenyReason.LICENSE_REJECTED, source=ResultSource.NONE)

        if action in (user.denied_permissions or []):
            return PermissionResult(
                allowed=False,
                reason=DenyReason.EXPLICITLY_DENIED,
                source=ResultSource.DIRECT_DENIAL,
            )

        if action in (user.direct_permissions or []):
            return PermissionResult(allowed=True, source=ResultSource.DIRECT_PERMISSION)

        try:
            roles = await self.role_repository.get_active_roles_for_user(user.id)
            for role in roles:
                result = await self._check_role(role, action)
                if result is not None:
                    return result
        except Exception as e:
            raise DynamicEvaluationError(
                "Role permission resolution failed",
                details={"user_id": user.id, "action": action, "error": str(e)},
            ) from e

        return PermissionResult(
            allowed=False,
            reason=DenyReason.NO_MATCHING_PERMISSION,
            required_permissions=[action],
            source=ResultSource.NONE,
        )

    async def _check_role(self, role: Role, action: str) -> Optional[PermissionResult]:
        if role.grants(action):
            return PermissionResult(
                allowed=True,
                source=ResultSource.ROLE,
                role_id=role.id,
                role_name=role.name,
            )
        return await self._check_inherited(role, action)

    async def _check_inherited(self, role: Role, action: str) -> Optional[PermissionResult]:
        """Walk the parent chain; cycles and inactive parents end the walk."""
        visited: Set[int] = {role.id}
        current = role

        for _ in range(MAX_INHERITANCE_DEPTH):
            if current.parent_role_id is None or current.parent_role_id in visited:
                return None

            parent = await self.role_repository.get_role(current.parent_role_id)
            if parent is None or not parent.is_active:
                return None

            if parent.grants(action):
                return PermissionResult(
                    allowed=True,
                    source=ResultSource.INHERITED,
                    role_id=parent.id,
                    role_name=parent.name,
                    inherited_from=role.name,
                )

            visited.add(parent.id)
            current = parent

        logger.warning(f"Role inheritance depth exceeded for role {role.name}")
        return None
