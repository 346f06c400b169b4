"""
License gate

Kept separate from PermissionService.check_permission: the evaluator only
denies rejected licenses, while routes that need a fully verified
practitioner compose this check on top.
"""
from typing import Iterable, Optional

from pharmacare_authz.core.config import settings
from pharmacare_authz.models.user import LicenseStatus, SystemRole
from pharmacare_authz.services.permission_types import DenyReason, PermissionResult


def check_license_requirement(user, licensed_roles: Optional[Iterable[str]] = None) -> PermissionResult:
    """Allow unless the user's role needs a license that is not approved."""
    roles = frozenset(licensed_roles if licensed_roles is not None else settings.RBAC_LICENSED_ROLES)

    if user.system_role == SystemRole.SUPER_ADMIN or user.system_role not in roles:
        return PermissionResult(allowed=True)

    status = user.license_status
    if status == LicenseStatus.APPROVED:
        return PermissionResult(allowed=True)
    if status == LicenseStatus.PENDING:
        return PermissionResult(allowed=False, reason=DenyReason.LICENSE_PENDING)
    if status == LicenseStatus.REJECTED:
        return PermissionResult(allowed=False, reason=DenyReason.LICENSE_REJECTED)
    return PermissionResult(allowed=False, reason=DenyReason.LICENSE_REQUIRED)
