"""
Shared types for the permission evaluators

PermissionResult is what every evaluator returns. WorkspaceContext is the
per-request snapshot callers resolve before asking for a decision.
CompatibilityConfig is the router's feature-flag backed configuration; it is
frozen so a config change is always a whole-object swap.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from pharmacare_authz.models.workspace import SubscriptionStatus


class PermissionMethod(str, Enum):
    """Which evaluator handles a check."""
    DYNAMIC = "dynamic"
    LEGACY = "legacy"


class MigrationPhase(str, Enum):
    """Stages of the static -> dynamic RBAC migration."""
    PREPARATION = "preparation"
    MIGRATION = "migration"
    VALIDATION = "validation"
    CLEANUP = "cleanup"


class ResultSource:
    """Values for PermissionResult.source."""
    LEGACY = "legacy"
    DYNAMIC = "dynamic"
    LEGACY_FALLBACK = "legacy_fallback"
    LEGACY_ERROR_FALLBACK = "legacy_error_fallback"
    ERROR_FALLBACK = "error_fallback"
    SUPER_ADMIN = "super_admin"
    DIRECT_PERMISSION = "direct_permission"
    DIRECT_DENIAL = "direct_denial"
    ROLE = "role"
    INHERITED = "inherited"
    NONE = "none"


class DenyReason:
    """Machine-readable reasons shared by the evaluators."""
    ACCOUNT_SUSPENDED = "User account is suspended"
    LICENSE_REJECTED = "License verification rejected"
    LICENSE_PENDING = "License verification pending"
    LICENSE_REQUIRED = "License verification required"
    NOT_DEFINED = "Permission not defined"
    INSUFFICIENT_SYSTEM_ROLE = "Insufficient system role"
    INSUFFICIENT_WORKPLACE_ROLE = "Insufficient workplace role"
    PLAN_TIER_REQUIRED = "Plan upgrade required"
    FEATURES_UNAVAILABLE = "Required plan features not available"
    SUBSCRIPTION_REQUIRED = "Active subscription required"
    EXPLICITLY_DENIED = "Permission explicitly denied"
    NO_MATCHING_PERMISSION = "No matching permissions found"
    CHECK_FAILED = "Permission check failed"


@dataclass
class PermissionResult:
    """Outcome of a single permission evaluation."""
    allowed: bool
    reason: Optional[str] = None
    required_permissions: Optional[List[str]] = None
    required_roles: Optional[List[str]] = None
    required_features: Optional[List[str]] = None
    required_plan_tiers: Optional[List[str]] = None
    upgrade_required: bool = False
    source: Optional[str] = None
    response_time: Optional[float] = None
    role_id: Optional[int] = None
    role_name: Optional[str] = None
    inherited_from: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize without the empty optional fields."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class WorkspaceContext:
    """
    Resolved tenant snapshot for one request.

    workspace, subscription and plan are resolved together: a subscription
    or plan without a workspace is rejected.
    """
    workspace: Any = None
    subscription: Any = None
    plan: Any = None
    permissions: List[str] = field(default_factory=list)
    limits: Dict[str, Optional[int]] = field(default_factory=dict)
    is_subscription_active: bool = False
    is_trial_expired: bool = False

    def __post_init__(self):
        if self.workspace is None and (self.subscription is not None or self.plan is not None):
            raise ValueError("WorkspaceContext has a subscription or plan but no workspace")
        if self.permissions is None:
            raise ValueError("WorkspaceContext.permissions must be a list, not None")

    @property
    def workspace_id(self) -> Optional[int]:
        return getattr(self.workspace, "id", None)

    @property
    def plan_tier(self) -> Optional[str]:
        return getattr(self.plan, "tier", None)

    @property
    def is_trial(self) -> bool:
        """True if the workspace or its subscription is currently in trial."""
        if self.subscription is not None:
            status = getattr(self.subscription, "status", None)
        else:
            status = getattr(self.workspace, "subscription_status", None)
        return status == SubscriptionStatus.TRIAL

    @property
    def is_trial_active(self) -> bool:
        return self.is_trial and not self.is_trial_expired

    def has_feature(self, feature: str) -> bool:
        return "*" in self.permissions or feature in self.permissions


@dataclass(frozen=True)
class CompatibilityConfig:
    """Compatibility-router configuration. Replace, never mutate."""
    enable_dynamic_rbac: bool = False
    enable_legacy_fallback: bool = True
    enable_deprecation_warnings: bool = True
    migration_phase: MigrationPhase = MigrationPhase.PREPARATION
    rollout_percentage: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["migration_phase"] = self.migration_phase.value
        return data
