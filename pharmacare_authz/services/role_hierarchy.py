"""
Role and plan hierarchies

Each role maps to the roles it dominates, itself included. "At least role X"
checks go through has_required_role so the tables stay the single source of
truth: a role with no entry dominates nothing, not even itself.
"""
from typing import Dict, List, Mapping, Sequence

from pharmacare_authz.models.user import SystemRole, WorkplaceRole
from pharmacare_authz.models.workspace import PlanTier

SYSTEM_ROLE_HIERARCHY: Dict[str, List[str]] = {
    SystemRole.SUPER_ADMIN: [
        SystemRole.SUPER_ADMIN,
        SystemRole.PHARMACY_OUTLET,
        SystemRole.PHARMACY_TEAM,
        SystemRole.PHARMACIST,
        SystemRole.INTERN_PHARMACIST,
    ],
    SystemRole.PHARMACY_OUTLET: [SystemRole.PHARMACY_OUTLET, SystemRole.PHARMACY_TEAM, SystemRole.PHARMACIST],
    SystemRole.PHARMACY_TEAM: [SystemRole.PHARMACY_TEAM, SystemRole.PHARMACIST],
    SystemRole.PHARMACIST: [SystemRole.PHARMACIST],
    SystemRole.INTERN_PHARMACIST: [SystemRole.INTERN_PHARMACIST],
}

WORKPLACE_ROLE_HIERARCHY: Dict[str, List[str]] = {
    WorkplaceRole.OWNER: [
        WorkplaceRole.OWNER,
        WorkplaceRole.PHARMACIST,
        WorkplaceRole.STAFF,
        WorkplaceRole.TECHNICIAN,
        WorkplaceRole.CASHIER,
        WorkplaceRole.ASSISTANT,
    ],
    WorkplaceRole.PHARMACIST: [WorkplaceRole.PHARMACIST, WorkplaceRole.TECHNICIAN, WorkplaceRole.ASSISTANT],
    WorkplaceRole.STAFF: [WorkplaceRole.STAFF, WorkplaceRole.TECHNICIAN, WorkplaceRole.ASSISTANT],
    WorkplaceRole.TECHNICIAN: [WorkplaceRole.TECHNICIAN, WorkplaceRole.ASSISTANT],
    WorkplaceRole.CASHIER: [WorkplaceRole.CASHIER, WorkplaceRole.ASSISTANT],
    WorkplaceRole.ASSISTANT: [WorkplaceRole.ASSISTANT],
}

# Used for upgrade/downgrade comparisons
PLAN_TIER_HIERARCHY: Dict[str, int] = {
    PlanTier.FREE_TRIAL: 0,
    PlanTier.BASIC: 1,
    PlanTier.PRO: 2,
    PlanTier.PHARMILY: 3,
    PlanTier.NETWORK: 4,
    PlanTier.ENTERPRISE: 5,
}

# Features available on every plan
DEFAULT_FEATURES = ["dashboard", "basic_reports", "user_management"]

_BASIC_FEATURES = [
    "dashboard",
    "patient_limit",
    "basic_reports",
    "email_reminders",
    "clinical_interventions",
]
_PRO_FEATURES = _BASIC_FEATURES + [
    "advanced_reports",
    "data_export",
    "api_access",
    "audit_logs",
    "integrations",
]
_PHARMILY_FEATURES = _PRO_FEATURES + [
    "data_import",
    "adr_module",
    "adr_reporting",
    "scheduled_reports",
    "data_backup",
]
_NETWORK_FEATURES = _PHARMILY_FEATURES + [
    "scheduled_backups",
    "multi_location_dashboard",
    "team_management",
    "multi_user_support",
]

TIER_FEATURES: Dict[str, List[str]] = {
    PlanTier.FREE_TRIAL: ["*"],  # All features during trial
    PlanTier.BASIC: _BASIC_FEATURES,
    PlanTier.PRO: _PRO_FEATURES,
    PlanTier.PHARMILY: _PHARMILY_FEATURES,
    PlanTier.NETWORK: _NETWORK_FEATURES,
    PlanTier.ENTERPRISE: _NETWORK_FEATURES + [
        "custom_integrations",
        "priority_support",
        "dedicated_manager",
    ],
}


def has_required_role(
    user_role: str,
    required_role: str,
    hierarchy: Mapping[str, Sequence[str]],
) -> bool:
    """
    Check whether user_role is at least as senior as required_role.

    Looks the user's role up in the hierarchy table; plain string equality
    is not consulted, so an unknown role satisfies nothing.
    """
    if not user_role:
        return False
    return required_role in hierarchy.get(user_role, ())


def has_any_required_role(
    user_role: str,
    required_roles: Sequence[str],
    hierarchy: Mapping[str, Sequence[str]],
) -> bool:
    """Check whether user_role dominates at least one of required_roles."""
    return any(has_required_role(user_role, role, hierarchy) for role in required_roles)

