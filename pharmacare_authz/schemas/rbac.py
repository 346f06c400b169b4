"""
RBAC schemas
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from pharmacare_authz.services.permission_types import MigrationPhase, PermissionMethod


class CompatibilityConfigUpdate(BaseModel):
    """Partial update to the compatibility-router configuration."""
    enable_dynamic_rbac: Optional[bool] = None
    enable_legacy_fallback: Optional[bool] = None
    enable_deprecation_warnings: Optional[bool] = None
    migration_phase: Optional[MigrationPhase] = None
    rollout_percentage: Optional[int] = Field(None, ge=0, le=100)


class CompatibilityConfigResponse(BaseModel):
    enable_dynamic_rbac: bool
    enable_legacy_fallback: bool
    enable_deprecation_warnings: bool
    migration_phase: MigrationPhase
    rollout_percentage: int


class ConfigUpdateResponse(BaseModel):
    config: CompatibilityConfigResponse
    persisted_flags: List[str]
    failed_flags: List[str]


class MetricsResponse(BaseModel):
    dynamic_checks: int
    legacy_checks: int
    fallback_usage: int
    errors: int
    average_response_time: float
    collected_since: str
    config: CompatibilityConfigResponse


class ConsistencyCheckRequest(BaseModel):
    """Run both evaluators for one user against a list of actions."""
    user_id: int
    workspace_id: Optional[int] = None
    actions: List[str] = Field(..., min_length=1, max_length=500)


class PermissionInconsistency(BaseModel):
    action: str
    dynamic_result: bool
    legacy_result: bool
    dynamic_reason: Optional[str] = None
    legacy_reason: Optional[str] = None


class ConsistencyReportResponse(BaseModel):
    consistent: bool
    checked: int
    inconsistencies: List[PermissionInconsistency]


class MigrationReadinessResponse(BaseModel):
    ready_for_migration: bool
    issues: List[str]
    recommendations: List[str]
    statistics: Dict[str, int]


class MyPermissionsResponse(BaseModel):
    user_id: int
    workspace_id: Optional[int] = None
    method: PermissionMethod
    permissions: List[str]
    context: Dict[str, Any] = Field(default_factory=dict)
