"""
Permission Matrix

Maps every guardable action ("patient.create", "invitation.delete", ...) to
the requirements a user and workspace must meet:

- system_roles:        platform roles that qualify on their own
- workplace_roles:     tenant roles that qualify ("at least" via hierarchy)
- features:            plan features that must all be enabled
- plan_tiers:          plan tiers the workspace must be on
- requires_active_subscription / allow_trial_access

The matrix is loaded through a loader callable so it can come from code,
a file, or the database. PermissionMatrixCache keeps one immutable snapshot
per TTL window and swaps it wholesale on refresh.
"""
import asyncio
import inspect
import logging
import time
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from pharmacare_authz.core.config import settings
from pharmacare_authz.core.exceptions import PermissionMatrixError

logger = logging.getLogger(__name__)

# Default cache window, seconds
CACHE_DURATION = settings.PERMISSION_MATRIX_CACHE_SECONDS


class PermissionRequirement(BaseModel):
    """Requirement record for one action. Omitted axes are not checked."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    system_roles: Optional[List[str]] = None
    workplace_roles: Optional[List[str]] = None
    features: Optional[List[str]] = None
    plan_tiers: Optional[List[str]] = None
    requires_active_subscription: bool = False
    allow_trial_access: bool = False


PermissionMatrix = Mapping[str, PermissionRequirement]
MatrixLoader = Callable[[], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]]

_PRO_UP = ["pro", "pharmily", "network", "enterprise"]
_PHARMILY_UP = ["pharmily", "network", "enterprise"]
_NETWORK_UP = ["network", "enterprise"]

_CLINICAL = ["Owner", "Pharmacist"]
_CLINICAL_TECH = ["Owner", "Pharmacist", "Technician"]
_ALL_FLOOR = ["Owner", "Pharmacist", "Technician", "Assistant"]

DEFAULT_PERMISSION_MATRIX: Dict[str, Dict[str, Any]] = {
    # Invitations
    "invitation.create": {"workplace_roles": ["Owner"], "features": ["team_management"], "allow_trial_access": True},
    "invitation.delete": {"workplace_roles": ["Owner"], "features": ["team_management"], "allow_trial_access": True},
    "invitation.list": {"workplace_roles": ["Owner"], "allow_trial_access": True},
    "invitation.resend": {"workplace_roles": ["Owner"], "features": ["team_management"], "allow_trial_access": True},
    "invitation.view": {"workplace_roles": ["Owner"], "allow_trial_access": True},

    # Patients
    "patient.create": {"workplace_roles": _CLINICAL_TECH, "features": ["patient_limit"],
                       "requires_active_subscription": True, "allow_trial_access": True},
    "patient.read": {"workplace_roles": _ALL_FLOOR, "requires_active_subscription": True, "allow_trial_access": True},
    "patient.update": {"workplace_roles": _CLINICAL_TECH, "requires_active_subscription": True, "allow_trial_access": True},
    "patient.delete": {"workplace_roles": _CLINICAL, "requires_active_subscription": True},
    "patient.export": {"workplace_roles": _CLINICAL, "features": ["data_export"], "requires_active_subscription": True},
    "patient.import": {"workplace_roles": _CLINICAL, "features": ["data_import"], "plan_tiers": _PRO_UP,
                       "requires_active_subscription": True},

    # Clinical notes
    "clinical_notes.create": {"workplace_roles": _CLINICAL, "requires_active_subscription": True, "allow_trial_access": True},
    "clinical_notes.read": {"workplace_roles": _CLINICAL_TECH, "requires_active_subscription": True, "allow_trial_access": True},
    "clinical_notes.update": {"workplace_roles": _CLINICAL, "requires_active_subscription": True, "allow_trial_access": True},
    "clinical_notes.delete": {"workplace_roles": _CLINICAL, "requires_active_subscription": True},
    "clinical_notes.confidential_access": {"workplace_roles": _CLINICAL, "requires_active_subscription": True,
                                           "allow_trial_access": True},
    "clinical_notes.audit_access": {"workplace_roles": ["Owner"], "system_roles": ["super_admin"],
                                    "features": ["audit_logs"], "plan_tiers": _PRO_UP,
                                    "requires_active_subscription": True},

    # Medications
    "medication.create": {"workplace_roles": _CLINICAL_TECH, "requires_active_subscription": True, "allow_trial_access": True},
    "medication.read": {"workplace_roles": _ALL_FLOOR, "requires_active_subscription": True, "allow_trial_access": True},
    "medication.update": {"workplace_roles": _CLINICAL_TECH, "requires_active_subscription": True, "allow_trial_access": True},
    "medication.delete": {"workplace_roles": _CLINICAL, "requires_active_subscription": True},

    # Medication therapy review
    "mtr.create": {"workplace_roles": _CLINICAL, "requires_active_subscription": True, "allow_trial_access": True},
    "mtr.read": {"workplace_roles": _CLINICAL_TECH, "requires_active_subscription": True, "allow_trial_access": True},
    "mtr.update": {"workplace_roles": _CLINICAL, "requires_active_subscription": True, "allow_trial_access": True},
    "mtr.delete": {"workplace_roles": _CLINICAL, "requires_active_subscription": True},

    # Clinical interventions
    "clinical_intervention.create": {"workplace_roles": _CLINICAL, "features": ["clinical_interventions"],
                                     "requires_active_subscription": True, "allow_trial_access": True},
    "clinical_intervention.read": {"workplace_roles": _CLINICAL_TECH, "features": ["clinical_interventions"],
                                   "requires_active_subscription": True, "allow_trial_access": True},
    "clinical_intervention.assign": {"workplace_roles": _CLINICAL,
                                     "features": ["clinical_interventions", "team_management"],
                                     "requires_active_subscription": True, "allow_trial_access": True},
    "clinical_intervention.reports": {"workplace_roles": _CLINICAL,
                                      "features": ["clinical_interventions", "advanced_reports"],
                                      "plan_tiers": _PRO_UP, "requires_active_subscription": True},

    # Subscription and billing
    "subscription.view": {"workplace_roles": ["Owner"], "allow_trial_access": True},
    "subscription.manage": {"workplace_roles": ["Owner"], "allow_trial_access": True},
    "subscription.upgrade": {"workplace_roles": ["Owner"], "allow_trial_access": True},
    "subscription.downgrade": {"workplace_roles": ["Owner"], "requires_active_subscription": True},
    "subscription.cancel": {"workplace_roles": ["Owner"], "requires_active_subscription": True},
    "billing.view": {"workplace_roles": ["Owner"], "allow_trial_access": True},
    "billing.manage": {"workplace_roles": ["Owner"], "allow_trial_access": True},

    # Workspace
    "workspace.settings": {"workplace_roles": ["Owner"], "system_roles": ["super_admin"], "allow_trial_access": True},
    "workspace.delete": {"workplace_roles": ["Owner"], "system_roles": ["super_admin"]},
    "workspace.transfer": {"workplace_roles": ["Owner"], "requires_active_subscription": True},
    "workspace.analytics": {"workplace_roles": ["Owner"], "allow_trial_access": True},

    # Reports
    "reports.basic": {"workplace_roles": _CLINICAL, "requires_active_subscription": True, "allow_trial_access": True},
    "reports.advanced": {"workplace_roles": _CLINICAL, "features": ["advanced_reports"], "plan_tiers": _PRO_UP,
                         "requires_active_subscription": True},
    "reports.schedule": {"workplace_roles": _CLINICAL, "features": ["scheduled_reports"], "plan_tiers": _PHARMILY_UP,
                         "requires_active_subscription": True},

    # Adverse drug reactions
    "adr.create": {"workplace_roles": _CLINICAL, "features": ["adr_module", "adr_reporting"],
                   "plan_tiers": _PHARMILY_UP, "requires_active_subscription": True},
    "adr.read": {"workplace_roles": _CLINICAL_TECH, "features": ["adr_module"],
                 "requires_active_subscription": True, "allow_trial_access": True},

    # Locations
    "location.read": {"workplace_roles": _CLINICAL, "features": ["multi_location_dashboard"], "plan_tiers": _NETWORK_UP,
                      "requires_active_subscription": True},
    "location.manage": {"workplace_roles": ["Owner"], "features": ["multi_location_dashboard"],
                        "plan_tiers": _NETWORK_UP, "requires_active_subscription": True},

    # Team
    "team.invite": {"workplace_roles": ["Owner"], "features": ["multi_user_support", "team_management"],
                    "requires_active_subscription": True, "allow_trial_access": True},
    "team.manage": {"workplace_roles": ["Owner"], "features": ["team_management"],
                    "requires_active_subscription": True, "allow_trial_access": True},
    "team.role_change": {"workplace_roles": ["Owner"], "features": ["team_management"],
                         "requires_active_subscription": True, "allow_trial_access": True},

    # API access
    "api.access": {"workplace_roles": _CLINICAL, "features": ["api_access"], "plan_tiers": _PRO_UP,
                   "requires_active_subscription": True},
    "api.key_generate": {"workplace_roles": ["Owner"], "features": ["api_access"], "plan_tiers": _PRO_UP,
                         "requires_active_subscription": True},

    # Platform administration
    "admin.users": {"system_roles": ["super_admin"], "allow_trial_access": True},
    "admin.workspaces": {"system_roles": ["super_admin"], "allow_trial_access": True},
    "admin.subscriptions": {"system_roles": ["super_admin"], "allow_trial_access": True},
    "admin.feature_flags": {"system_roles": ["super_admin"], "allow_trial_access": True},
    "admin.rbac": {"system_roles": ["super_admin"], "allow_trial_access": True},

    # Audit
    "audit.view": {"workplace_roles": ["Owner"], "system_roles": ["super_admin"], "features": ["audit_logs"],
                   "plan_tiers": _PRO_UP, "requires_active_subscription": True},
    "audit.export": {"workplace_roles": ["Owner"], "system_roles": ["super_admin"],
                     "features": ["audit_logs", "data_export"], "plan_tiers": _PHARMILY_UP,
                     "requires_active_subscription": True},

    # Backups
    "backup.create": {"workplace_roles": ["Owner"], "features": ["data_backup"], "plan_tiers": _PHARMILY_UP,
                      "requires_active_subscription": True},
    "backup.schedule": {"workplace_roles": ["Owner"], "features": ["data_backup", "scheduled_backups"],
                        "plan_tiers": _NETWORK_UP, "requires_active_subscription": True},
}


def default_matrix_loader() -> Mapping[str, Any]:
    """Loader that serves the built-in matrix."""
    return DEFAULT_PERMISSION_MATRIX


def parse_permission_matrix(raw: Mapping[str, Any]) -> PermissionMatrix:
    """
    Validate raw matrix data into an immutable mapping.

    Raises:
        PermissionMatrixError: If any entry fails validation
    """
    parsed: Dict[str, PermissionRequirement] = {}
    for action, requirement in raw.items():
        if isinstance(requirement, PermissionRequirement):
            parsed[action] = requirement
            continue
        try:
            parsed[action] = PermissionRequirement.model_validate(requirement)
        except ValidationError as e:
            raise PermissionMatrixError(
                f"Invalid permission matrix entry for '{action}'",
                details={"action": action, "errors": e.errors()},
            ) from e
    return MappingProxyType(parsed)


class PermissionMatrixCache:
    """
    TTL cache around a matrix loader.

    Readers always get a complete snapshot: the current one stays readable
    while a refresh loads, and the new one replaces it in a single
    assignment. Only the first load makes readers wait; after that a stale
    snapshot is served while one background task reloads it. Concurrent
    refreshes are collapsed behind an asyncio lock.
    """

    def __init__(self, loader: Optional[MatrixLoader] = None, cache_ttl: Optional[float] = None):
        self._loader = loader or default_matrix_loader
        self._cache_ttl = CACHE_DURATION if cache_ttl is None else cache_ttl
        self._matrix: Optional[PermissionMatrix] = None
        self._last_refresh: float = 0
        self._lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_stale(self) -> bool:
        return self._matrix is None or time.monotonic() - self._last_refresh > self._cache_ttl

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def get(self) -> PermissionMatrix:
        """Return the current matrix snapshot, scheduling a reload if stale."""
        if self._matrix is None:
            await self._refresh_if_stale()
        elif self.is_stale and not self.is_refreshing:
            self._refresh_task = asyncio.create_task(self._refresh_if_stale())
        return self._matrix

    async def _refresh_if_stale(self) -> None:
        async with self._lock:
            if self.is_stale:
                await self._load()

    async def refresh(self) -> PermissionMatrix:
        """Force an immediate reload."""
        async with self._lock:
            await self._load()
        return self._matrix

    async def _load(self) -> None:
        try:
            raw = self._loader()
            if inspect.isawaitable(raw):
                raw = await raw
            matrix = parse_permission_matrix(raw)
        except Exception as e:
            logger.error(f"Failed to load permission matrix: {e}")
            if self._matrix is None:
                if isinstance(e, PermissionMatrixError):
                    raise
                raise PermissionMatrixError("Permission matrix unavailable", details={"error": str(e)}) from e
            # Keep serving the previous snapshot; retry after the next window
            self._last_refresh = time.monotonic()
            return

        self._matrix = matrix
        self._last_refresh = time.monotonic()
        logger.debug(f"Permission matrix loaded: {len(matrix)} actions")
