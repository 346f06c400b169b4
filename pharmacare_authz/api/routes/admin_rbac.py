"""
Admin RBAC Routes

Operational surface for the static -> dynamic RBAC migration: metrics,
configuration, consistency checks and the readiness report. Everything
except /me/permissions requires the admin.rbac permission.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmacare_authz.api.deps import (
    get_current_user,
    get_rbac_service,
    get_workspace_context,
    require_permission,
)
from pharmacare_authz.core.database import get_db
from pharmacare_authz.core.exceptions import ConfigurationError, PermissionMatrixError
from pharmacare_authz.models.user import User
from pharmacare_authz.schemas.rbac import (
    CompatibilityConfigUpdate,
    ConfigUpdateResponse,
    ConsistencyCheckRequest,
    ConsistencyReportResponse,
    MetricsResponse,
    MigrationReadinessResponse,
    MyPermissionsResponse,
)
from pharmacare_authz.services.backward_compatibility import BackwardCompatibilityService
from pharmacare_authz.services.permission_types import WorkspaceContext
from pharmacare_authz.services.workspace_context import load_workspace_context

logger = logging.getLogger(__name__)

router = APIRouter()

RBAC_ADMIN = "admin.rbac"


# ============================================================
# Metrics
# ============================================================

@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(
    current_user: User = Depends(require_permission(RBAC_ADMIN)),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
):
    """Permission check counters and the active compatibility config."""
    return rbac.get_metrics()


@router.post("/metrics/reset", response_model=MetricsResponse)
async def reset_metrics(
    current_user: User = Depends(require_permission(RBAC_ADMIN)),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
):
    rbac.reset_metrics()
    logger.info(f"RBAC metrics reset by {current_user.email}")
    return rbac.get_metrics()


# ============================================================
# Configuration
# ============================================================

@router.patch("/config", response_model=ConfigUpdateResponse)
async def update_config(
    data: CompatibilityConfigUpdate,
    current_user: User = Depends(require_permission(RBAC_ADMIN)),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
):
    """
    Change rollout settings.

    The new config applies immediately; failed_flags lists rbac_* flags that
    could not be written back and will revert on the next restart.
    """
    result = await rbac.update_configuration(data, modified_by=current_user.email)
    return ConfigUpdateResponse(
        config=result.config.to_dict(),
        persisted_flags=result.persisted_flags,
        failed_flags=result.failed_flags,
    )


@router.post("/matrix/refresh")
async def refresh_matrix(
    current_user: User = Depends(require_permission(RBAC_ADMIN)),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
):
    """Reload the permission matrix without waiting for the cache window."""
    try:
        matrix = await rbac.permission_service.refresh_cache()
    except PermissionMatrixError as e:
        logger.error(f"Permission matrix refresh failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.message,
        )
    return {"actions": len(matrix)}


# ============================================================
# Migration tooling
# ============================================================

@router.post("/consistency", response_model=ConsistencyReportResponse)
async def check_consistency(
    data: ConsistencyCheckRequest,
    current_user: User = Depends(require_permission(RBAC_ADMIN)),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
    db: AsyncSession = Depends(get_db),
):
    """Compare dynamic and static decisions for one user."""
    result = await db.execute(select(User).where(User.id == data.user_id))
    target = result.scalar_one_or_none()
    if not target:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    workspace_id = data.workspace_id if data.workspace_id is not None else target.workplace_id
    context = await load_workspace_context(db, workspace_id)

    report = await rbac.validate_permission_consistency(context, target, data.actions)
    return report.to_dict()


@router.get("/readiness", response_model=MigrationReadinessResponse)
async def get_readiness(
    current_user: User = Depends(require_permission(RBAC_ADMIN)),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
):
    try:
        report = await rbac.generate_migration_readiness_report()
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=e.message,
        )
    return report.to_dict()


# ============================================================
# Caller capabilities
# ============================================================

@router.get("/me/permissions", response_model=MyPermissionsResponse)
async def get_my_permissions(
    current_user: User = Depends(get_current_user),
    context: WorkspaceContext = Depends(get_workspace_context),
    rbac: BackwardCompatibilityService = Depends(get_rbac_service),
):
    """Actions the caller may currently perform, for client-side UI gating."""
    permissions: List[str] = await rbac.resolve_user_permissions(context, current_user)
    return MyPermissionsResponse(
        user_id=current_user.id,
        workspace_id=context.workspace_id,
        method=rbac.determine_permission_method(current_user),
        permissions=permissions,
        context={
            "plan_tier": context.plan_tier,
            "is_subscription_active": context.is_subscription_active,
            "is_trial_expired": context.is_trial_expired,
            "features": list(context.permissions),
            "limits": dict(context.limits),
        },
    )
