"""
API dependencies

Translates PermissionResult into HTTP:
- 401: missing or invalid token
- 404: workspace-scoped action without a workspace
- 402: denial that a plan upgrade would fix
- 403: any other denial, including an unverified license
- 500: the check itself failed (error_fallback)
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmacare_authz.core.database import get_db
from pharmacare_authz.core.security import decode_token
from pharmacare_authz.models.user import User
from pharmacare_authz.services.backward_compatibility import BackwardCompatibilityService
from pharmacare_authz.services.license_gate import check_license_requirement
from pharmacare_authz.services.permission_types import PermissionResult, ResultSource, WorkspaceContext
from pharmacare_authz.services.workspace_context import load_workspace_context

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_rbac_service(request: Request) -> BackwardCompatibilityService:
    """The process-wide router created in the app lifespan."""
    rbac = getattr(request.app.state, "rbac", None)
    if rbac is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authorization service not initialized",
        )
    return rbac


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get current authenticated user"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    return user


async def get_workspace_context(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkspaceContext:
    """Workspace snapshot for the current user's workplace."""
    return await load_workspace_context(db, user.workplace_id)


def _denial_detail(action: str, result: PermissionResult) -> dict:
    detail = {"message": result.reason or "Permission denied", "action": action}
    detail.update({
        k: v for k, v in result.to_dict().items()
        if k in ("required_permissions", "required_roles", "required_features", "required_plan_tiers", "upgrade_required")
    })
    return detail


def _enforce_license(user: User) -> None:
    result = check_license_requirement(user)
    if result.allowed:
        return

    logger.info(f"License check failed: user={user.id} role={user.system_role} status={user.license_status}")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "message": result.reason,
            "license_status": user.license_status,
            "requires_license": True,
        },
    )


def require_license():
    """
    Dependency requiring a verified license for licensed system roles.

    Returns the current user when allowed.

    Usage:
        current_user: User = Depends(require_license())
    """

    async def checker(user: User = Depends(get_current_user)) -> User:
        _enforce_license(user)
        return user

    return checker


def require_permission(action: str, workspace_scoped: bool = False, licensed: bool = False):
    """
    Dependency factory guarding a route with one action.

    Returns the current user when allowed. With licensed=True the license
    gate runs first, so an unverified practitioner gets 403 before the
    action is evaluated.

    Usage:
        current_user: User = Depends(require_permission("patient.create", workspace_scoped=True))
        current_user: User = Depends(require_permission("mtr.create", licensed=True))
    """

    async def checker(
        user: User = Depends(get_current_user),
        context: WorkspaceContext = Depends(get_workspace_context),
        rbac: BackwardCompatibilityService = Depends(get_rbac_service),
    ) -> User:
        if licensed:
            _enforce_license(user)

        if workspace_scoped and context.workspace is None and not user.is_super_admin:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Workspace not found",
            )

        result = await rbac.check_permission(context, user, action)

        if result.allowed:
            return user

        if result.source == ResultSource.ERROR_FALLBACK:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Permission check failed",
            )

        logger.info(f"Permission denied: user={user.id} action={action} reason={result.reason}")
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED if result.upgrade_required else status.HTTP_403_FORBIDDEN,
            detail=_denial_detail(action, result),
        )

    return checker
