"""
Permission Service (static matrix evaluator)

Walks the permission matrix for a (user, workspace context, action) triple.
Checks run in a fixed order and the first failure wins:

1. User status gate (suspended account, rejected license)
2. Super-admin bypass
3. Matrix lookup (unknown action -> deny)
4. System role (qualifies on its own)
5. Workplace role, hierarchy-aware
6. Plan tier
7. Plan features
8. Active subscription (trial may substitute when allowed)

resolve_user_permissions runs the same evaluation over every matrix key so
the client-facing permission list can never drift from enforcement.
"""
import logging
from typing import Iterable, List, Mapping, Optional, Sequence

from pharmacare_authz.core.config import settings
from pharmacare_authz.models.user import SystemRole, UserStatus, LicenseStatus
from pharmacare_authz.services.permission_matrix import (
    PermissionMatrix,
    PermissionMatrixCache,
    PermissionRequirement,
)
from pharmacare_authz.services.permission_types import (
    DenyReason,
    PermissionResult,
    WorkspaceContext,
)
from pharmacare_authz.services.role_hierarchy import (
    PLAN_TIER_HIERARCHY,
    WORKPLACE_ROLE_HIERARCHY,
    has_any_required_role,
)

logger = logging.getLogger(__name__)

SUPER_ADMIN_REASON = "Super admin access"
SYSTEM_ROLE_MATCH = "system_role_match"


class PermissionService:
    """
    Static permission evaluator.

    Construct once per process and share it; the only state is the matrix
    cache, which is safe for concurrent readers.
    """

    def __init__(
        self,
        matrix_cache: Optional[PermissionMatrixCache] = None,
        workplace_hierarchy: Optional[Mapping[str, Sequence[str]]] = None,
        licensed_roles: Optional[Iterable[str]] = None,
    ):
        self.matrix_cache = matrix_cache or PermissionMatrixCache()
        self.workplace_hierarchy = workplace_hierarchy or WORKPLACE_ROLE_HIERARCHY
        self.licensed_roles = frozenset(
            licensed_roles if licensed_roles is not None else settings.RBAC_LICENSED_ROLES
        )

    async def check_permission(self, context: WorkspaceContext, user, action: str) -> PermissionResult:
        """
        Decide whether user may perform action in context.

        Never raises for a denial; the reason string says which check failed.
        """
        status_result = self._check_user_status(user)
        if status_result is not None:
            return status_result

        if user.system_role == SystemRole.SUPER_ADMIN:
            return PermissionResult(allowed=True, reason=SUPER_ADMIN_REASON)

        matrix = await self.matrix_cache.get()
        requirement = matrix.get(action)
        if requirement is None:
            logger.debug(f"Permission not defined in matrix: {action}")
            return PermissionResult(allowed=False, reason=DenyReason.NOT_DEFINED)

        return self._evaluate(requirement, context, user)

    async def resolve_user_permissions(self, user, context: WorkspaceContext) -> List[str]:
        """
        List every matrix action the user currently passes check_permission for.

        Super admins get every action in the matrix.
        """
        matrix = await self.matrix_cache.get()

        if self._check_user_status(user) is not None:
            return []

        if user.system_role == SystemRole.SUPER_ADMIN:
            return sorted(matrix.keys())

        return sorted(
            action for action, requirement in matrix.items()
            if self._evaluate(requirement, context, user).allowed
        )

    async def refresh_cache(self) -> PermissionMatrix:
        """Force the matrix to reload now."""
        matrix = await self.matrix_cache.refresh()
        logger.info(f"Permission matrix cache refreshed ({len(matrix)} actions)")
        return matrix

    def requires_license(self, user) -> bool:
        return user.system_role in self.licensed_roles

    def _check_user_status(self, user) -> Optional[PermissionResult]:
        if user.status == UserStatus.SUSPENDED:
            return PermissionResult(allowed=False, reason=DenyReason.ACCOUNT_SUSPENDED)

        # Pending/missing licenses are gated by license_gate, not here
        if self.requires_license(user) and user.license_status == LicenseStatus.REJECTED:
            return PermissionResult(allowed=False, reason=DenyReason.LICENSE_REJECTED)

        return None

    def _evaluate(self, requirement: PermissionRequirement, context: WorkspaceContext, user) -> PermissionResult:
        # System role and workplace role are alternative qualifying paths
        if requirement.system_roles:
            if user.system_role in requirement.system_roles:
                return PermissionResult(allowed=True, reason=SYSTEM_ROLE_MATCH)
            if not requirement.workplace_roles:
                return PermissionResult(
                    allowed=False,
                    reason=DenyReason.INSUFFICIENT_SYSTEM_ROLE,
                    required_roles=list(requirement.system_roles),
                )

        if requirement.workplace_roles:
            workplace_role = user.workplace_role
            qualifies = workplace_role in requirement.workplace_roles or has_any_required_role(
                workplace_role, requirement.workplace_roles, self.workplace_hierarchy
            )
            if not qualifies:
                return PermissionResult(
                    allowed=False,
                    reason=DenyReason.INSUFFICIENT_WORKPLACE_ROLE,
                    required_roles=list(requirement.workplace_roles),
                )

        if requirement.plan_tiers and context.plan_tier not in requirement.plan_tiers:
            return PermissionResult(
                allowed=False,
                reason=DenyReason.PLAN_TIER_REQUIRED,
                upgrade_required=True,
                required_plan_tiers=sorted(
                    requirement.plan_tiers, key=lambda tier: PLAN_TIER_HIERARCHY.get(tier, len(PLAN_TIER_HIERARCHY))
                ),
            )

        if requirement.features:
            missing = [feature for feature in requirement.features if not context.has_feature(feature)]
            if missing:
                return PermissionResult(
                    allowed=False,
                    reason=DenyReason.FEATURES_UNAVAILABLE,
                    upgrade_required=True,
                    required_features=missing,
                )

        if requirement.requires_active_subscription and not context.is_subscription_active:
            if not (requirement.allow_trial_access and context.is_trial_active):
                return PermissionResult(
                    allowed=False,
                    reason=DenyReason.SUBSCRIPTION_REQUIRED,
                    upgrade_required=True,
                )

        return PermissionResult(allowed=True)
