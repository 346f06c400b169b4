"""
Backward Compatibility Service

Routes every permission check to either the dynamic (role-assignment) or
the static (matrix) evaluator while the RBAC migration is in progress.

Configuration lives in rbac_* feature flags:
- rbac_enable_dynamic: master switch for the dynamic evaluator
- rbac_enable_legacy_fallback: re-check dynamic denials/errors against the matrix
- rbac_enable_deprecation_warnings: log every check answered by the matrix
- rbac_migration_phase: preparation | migration | validation | cleanup
- rbac_rollout_percentage: share of users (0-100) eligible for dynamic checks

The in-memory config is a frozen CompatibilityConfig. Every request reads
one reference, and updates swap in a new object, so a check never sees a
half-applied change.

Usage:
    router = BackwardCompatibilityService(permission_service, dynamic_service, flag_store, user_directory)
    await router.initialize()

    result = await router.check_permission(context, user, "patient.create")
"""
import hashlib
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pharmacare_authz.core.config import settings
from pharmacare_authz.core.exceptions import ConfigurationError, FeatureFlagPersistenceError
from pharmacare_authz.core.feature_flags import FeatureFlagStore
from pharmacare_authz.core.monitoring import RBACMetrics
from pharmacare_authz.schemas.rbac import CompatibilityConfigUpdate
from pharmacare_authz.services.dynamic_permission_service import DynamicPermissionService
from pharmacare_authz.services.permission_service import PermissionService
from pharmacare_authz.services.permission_types import (
    CompatibilityConfig,
    DenyReason,
    MigrationPhase,
    PermissionMethod,
    PermissionResult,
    ResultSource,
    WorkspaceContext,
)
from pharmacare_authz.services.rbac_repository import UserDirectory

logger = logging.getLogger(__name__)

# CompatibilityConfig field -> feature flag key (without prefix)
CONFIG_FLAG_KEYS = {
    "enable_dynamic_rbac": "enable_dynamic",
    "enable_legacy_fallback": "enable_legacy_fallback",
    "enable_deprecation_warnings": "enable_deprecation_warnings",
    "migration_phase": "migration_phase",
    "rollout_percentage": "rollout_percentage",
}

VALIDATION_ERROR_REASON = "Validation error"


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
    return None


def _parse_phase(value: Any) -> Optional[MigrationPhase]:
    try:
        return MigrationPhase(value)
    except ValueError:
        return None


def _parse_percentage(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        percentage = int(value)
    except (TypeError, ValueError):
        return None
    if 0 <= percentage <= 100:
        return percentage
    return None


FLAG_PARSERS = {
    "enable_dynamic_rbac": _parse_bool,
    "enable_legacy_fallback": _parse_bool,
    "enable_deprecation_warnings": _parse_bool,
    "migration_phase": _parse_phase,
    "rollout_percentage": _parse_percentage,
}


def user_rollout_bucket(user_id: Any) -> int:
    """Stable 0-99 bucket for a user id; identical across processes and restarts."""
    digest = hashlib.sha256(str(user_id).encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


@dataclass
class ConfigurationUpdateResult:
    """New config plus the per-flag outcome of persisting it."""
    config: CompatibilityConfig
    persisted_flags: List[str] = field(default_factory=list)
    failed_flags: List[str] = field(default_factory=list)


@dataclass
class ConsistencyReport:
    consistent: bool
    checked: int
    inconsistencies: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consistent": self.consistent,
            "checked": self.checked,
            "inconsistencies": list(self.inconsistencies),
        }


@dataclass
class MigrationReadinessReport:
    ready_for_migration: bool
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    statistics: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready_for_migration": self.ready_for_migration,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "statistics": dict(self.statistics),
        }


class BackwardCompatibilityService:
    """
    Per-request router between the dynamic and static evaluators.

    Construct once at startup and share. check_permission never raises.
    """

    def __init__(
        self,
        permission_service: PermissionService,
        dynamic_service: DynamicPermissionService,
        flag_store: FeatureFlagStore,
        user_directory: Optional[UserDirectory] = None,
        metrics: Optional[RBACMetrics] = None,
        flag_prefix: Optional[str] = None,
        config: Optional[CompatibilityConfig] = None,
    ):
        self.permission_service = permission_service
        self.dynamic_service = dynamic_service
        self.flag_store = flag_store
        self.user_directory = user_directory
        self.metrics = metrics or RBACMetrics()
        self.flag_prefix = flag_prefix if flag_prefix is not None else settings.RBAC_FLAG_PREFIX
        self._config = config or CompatibilityConfig()
        self._initialized = False

    @property
    def config(self) -> CompatibilityConfig:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def flag_key(self, config_field: str) -> str:
        return f"{self.flag_prefix}{CONFIG_FLAG_KEYS[config_field]}"

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def initialize(self) -> CompatibilityConfig:
        """
        Load configuration from the feature-flag store.

        On failure, keep running with dynamic RBAC off and fallback on.
        """
        try:
            self._config = await self.load_configuration()
            logger.info(
                f"RBAC compatibility layer initialized: phase={self._config.migration_phase.value}, "
                f"dynamic={self._config.enable_dynamic_rbac}, rollout={self._config.rollout_percentage}%"
            )
        except Exception as e:
            logger.error(f"Failed to load RBAC configuration, forcing legacy-only mode: {e}")
            self._config = replace(self._config, enable_dynamic_rbac=False, enable_legacy_fallback=True)
        self._initialized = True
        return self._config

    async def load_configuration(self) -> CompatibilityConfig:
        """
        Build a config from the rbac_* flags.

        Missing flags keep their defaults. Malformed values are logged and
        ignored.

        Raises:
            ConfigurationError: If the flag store cannot be read
        """
        try:
            flags = await self.flag_store.get_prefixed(self.flag_prefix)
        except Exception as e:
            raise ConfigurationError(
                "Could not read RBAC feature flags",
                details={"prefix": self.flag_prefix, "error": str(e)},
            ) from e

        changes: Dict[str, Any] = {}
        for config_field, parser in FLAG_PARSERS.items():
            key = self.flag_key(config_field)
            if key not in flags:
                continue
            parsed = parser(flags[key])
            if parsed is None:
                logger.warning(f"Ignoring invalid value for feature flag {key}: {flags[key]!r}")
                continue
            changes[config_field] = parsed

        return replace(CompatibilityConfig(), **changes)

    async def update_configuration(
        self,
        patch: Union[CompatibilityConfigUpdate, Mapping[str, Any]],
        modified_by: Optional[str] = None,
    ) -> ConfigurationUpdateResult:
        """
        Apply a partial config change, then persist each changed field.

        The in-memory swap happens first and is never rolled back; a flag
        write that fails is logged and the remaining writes still run.

        Raises:
            pydantic.ValidationError: If patch holds unknown fields or bad values
        """
        if not isinstance(patch, CompatibilityConfigUpdate):
            patch = CompatibilityConfigUpdate.model_validate(dict(patch))
        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}

        previous = self._config
        self._config = replace(previous, **changes)
        logger.info(
            "RBAC configuration updated",
            extra={
                "changes": {k: getattr(self._config, k) for k in changes},
                "modified_by": modified_by,
            },
        )

        result = ConfigurationUpdateResult(config=self._config)
        for config_field, value in changes.items():
            key = self.flag_key(config_field)
            stored = value.value if isinstance(value, MigrationPhase) else value
            try:
                await self.flag_store.set_value(key, stored, modified_by=modified_by)
                result.persisted_flags.append(key)
            except FeatureFlagPersistenceError as e:
                logger.error(f"Failed to persist RBAC flag {key}: {e.message}", extra={"details": e.details})
                result.failed_flags.append(key)
            except Exception as e:
                # Other flag stores may raise their own errors; keep writing the rest
                logger.error(f"Failed to persist RBAC flag {key}: {type(e).__name__}: {e}")
                result.failed_flags.append(key)

        return result

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def determine_permission_method(
        self,
        user,
        force_method: Optional[Union[PermissionMethod, str]] = None,
        config: Optional[CompatibilityConfig] = None,
    ) -> PermissionMethod:
        """Pick the evaluator for this user under the given (or current) config."""
        if force_method:
            return PermissionMethod(force_method)

        config = config or self._config

        if not config.enable_dynamic_rbac:
            return PermissionMethod.LEGACY

        if config.rollout_percentage < 100:
            if user_rollout_bucket(user.id) >= config.rollout_percentage:
                return PermissionMethod.LEGACY

        if getattr(user, "assigned_roles", None):
            return PermissionMethod.DYNAMIC

        phase = config.migration_phase
        if phase == MigrationPhase.PREPARATION:
            return PermissionMethod.LEGACY
        if phase == MigrationPhase.MIGRATION:
            if getattr(user, "role_last_modified_at", None):
                return PermissionMethod.DYNAMIC
            return PermissionMethod.LEGACY
        return PermissionMethod.DYNAMIC

    async def check_permission(
        self,
        context: WorkspaceContext,
        user,
        action: str,
        force_method: Optional[Union[PermissionMethod, str]] = None,
        enable_metrics: bool = True,
    ) -> PermissionResult:
        """
        Decide one permission check through the configured evaluator.

        Any failure becomes a deny with source 'error_fallback'.
        """
        start = time.perf_counter()
        config = self._config

        try:
            method = self.determine_permission_method(user, force_method, config)
            if method == PermissionMethod.DYNAMIC:
                result = await self._check_dynamic(context, user, action, config)
            else:
                result = await self._check_legacy(context, user, action)

            if enable_metrics:
                result.response_time = self._record_response_time(start)

            if config.enable_deprecation_warnings and result.source == ResultSource.LEGACY:
                self._log_deprecation_warning(user, action, config)

            return result

        except Exception as e:
            self.metrics.increment("errors")
            logger.error(f"Permission check failed for action {action} (user {getattr(user, 'id', None)}): {e}")
            result = PermissionResult(
                allowed=False,
                reason=DenyReason.CHECK_FAILED,
                source=ResultSource.ERROR_FALLBACK,
            )
            if enable_metrics:
                result.response_time = self._record_response_time(start)
            return result

    async def _check_dynamic(
        self,
        context: WorkspaceContext,
        user,
        action: str,
        config: CompatibilityConfig,
    ) -> PermissionResult:
        try:
            dynamic_result = await self.dynamic_service.check_permission(user, action, context)
        except Exception as e:
            logger.error(f"Dynamic permission check failed for {action}: {e}")
            if not config.enable_legacy_fallback:
                raise
            self.metrics.increment("fallback_usage")
            legacy_result = await self.permission_service.check_permission(context, user, action)
            return replace(legacy_result, source=ResultSource.LEGACY_ERROR_FALLBACK)

        self.metrics.increment("dynamic_checks")

        if not dynamic_result.allowed and config.enable_legacy_fallback:
            legacy_result = await self.permission_service.check_permission(context, user, action)
            if legacy_result.allowed:
                self.metrics.increment("fallback_usage")
                logger.info(
                    "Dynamic RBAC denied but legacy allowed, using legacy result",
                    extra={"rbac_action": action, "user_id": user.id, "dynamic_reason": dynamic_result.reason},
                )
                return replace(legacy_result, source=ResultSource.LEGACY_FALLBACK)

        return replace(dynamic_result, source=dynamic_result.source or ResultSource.DYNAMIC)

    async def _check_legacy(self, context: WorkspaceContext, user, action: str) -> PermissionResult:
        self.metrics.increment("legacy_checks")
        result = await self.permission_service.check_permission(context, user, action)
        return replace(result, source=ResultSource.LEGACY)

    def _record_response_time(self, start: float) -> float:
        elapsed_ms = (time.perf_counter() - start) * 1000
        self.metrics.observe_response_time(elapsed_ms)
        return elapsed_ms

    def _log_deprecation_warning(self, user, action: str, config: CompatibilityConfig) -> None:
        logger.warning(
            "DEPRECATION: legacy RBAC permission check used",
            extra={
                "rbac_action": action,
                "user_id": getattr(user, "id", None),
                "user_email": getattr(user, "email", None),
                "migration_phase": config.migration_phase.value,
            },
        )

    async def resolve_user_permissions(self, context: WorkspaceContext, user) -> List[str]:
        """
        Matrix actions the user would currently be allowed, routed like check_permission.

        Does not touch metrics. A dynamic evaluation error counts as a deny
        unless fallback is enabled.
        """
        config = self._config
        method = self.determine_permission_method(user, config=config)
        if method == PermissionMethod.LEGACY:
            return await self.permission_service.resolve_user_permissions(user, context)

        legacy_allowed = set()
        if config.enable_legacy_fallback:
            legacy_allowed = set(await self.permission_service.resolve_user_permissions(user, context))

        matrix = await self.permission_service.matrix_cache.get()
        allowed: List[str] = []
        for action in sorted(matrix.keys()):
            try:
                dynamic_result = await self.dynamic_service.check_permission(user, action, context)
                granted = dynamic_result.allowed
            except Exception as e:
                logger.warning(f"Dynamic permission resolution failed for {action}: {e}")
                granted = False
            if granted or action in legacy_allowed:
                allowed.append(action)
        return allowed

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """Counter snapshot plus the active configuration."""
        snapshot = self.metrics.snapshot()
        snapshot["config"] = self._config.to_dict()
        return snapshot

    def reset_metrics(self) -> None:
        self.metrics.reset()
        logger.info("RBAC metrics reset")

    # ------------------------------------------------------------------
    # Migration tooling
    # ------------------------------------------------------------------

    async def validate_permission_consistency(
        self,
        context: WorkspaceContext,
        user,
        actions: Sequence[str],
    ) -> ConsistencyReport:
        """
        Run both evaluators for every action and report disagreements.

        Evaluators are called directly, without fallback or metrics, so a
        fallback cannot hide a difference.
        """
        inconsistencies: List[Dict[str, Any]] = []

        for action in actions:
            try:
                dynamic_result = await self.dynamic_service.check_permission(user, action, context)
                legacy_result = await self.permission_service.check_permission(context, user, action)
            except Exception as e:
                logger.warning(f"Consistency check failed for {action}: {e}")
                inconsistencies.append({
                    "action": action,
                    "dynamic_result": False,
                    "legacy_result": False,
                    "dynamic_reason": VALIDATION_ERROR_REASON,
                    "legacy_reason": VALIDATION_ERROR_REASON,
                    "error": str(e),
                })
                continue

            if dynamic_result.allowed != legacy_result.allowed:
                inconsistencies.append({
                    "action": action,
                    "dynamic_result": dynamic_result.allowed,
                    "legacy_result": legacy_result.allowed,
                    "dynamic_reason": dynamic_result.reason,
                    "legacy_reason": legacy_result.reason,
                })

        if inconsistencies:
            logger.warning(
                f"Permission inconsistencies for user {user.id}: {len(inconsistencies)} of {len(actions)} actions"
            )

        return ConsistencyReport(
            consistent=not inconsistencies,
            checked=len(actions),
            inconsistencies=inconsistencies,
        )

    async def generate_migration_readiness_report(self) -> MigrationReadinessReport:
        """
        Summarize whether the user base is ready for the dynamic evaluator.

        Raises:
            ConfigurationError: If no user directory was provided
        """
        if self.user_directory is None:
            raise ConfigurationError("Migration readiness report needs a user directory")

        config = self._config
        issues: List[str] = []
        recommendations: List[str] = []

        if not config.enable_dynamic_rbac:
            issues.append("Dynamic RBAC is disabled")
            recommendations.append("Enable dynamic RBAC with rbac_enable_dynamic once consistency checks pass")

        statistics = {
            "total_users": await self.user_directory.count_users(),
            "migrated_users": await self.user_directory.count_migrated_users(),
            "users_with_dynamic_roles": await self.user_directory.count_users_with_assigned_roles(),
            "users_with_direct_permissions": await self.user_directory.count_users_with_direct_permissions(),
            "orphaned_role_assignments": await self.user_directory.count_orphaned_role_assignments(),
        }

        unmigrated = statistics["total_users"] - statistics["migrated_users"]
        if unmigrated > 0:
            issues.append(f"{unmigrated} users have not been migrated")
            recommendations.append("Run the role migration for the remaining users")

        if statistics["orphaned_role_assignments"] > 0:
            issues.append(f"{statistics['orphaned_role_assignments']} role assignments reference missing users")
            recommendations.append("Deactivate or delete orphaned role assignments")

        if config.rollout_percentage < 100 and config.enable_dynamic_rbac:
            recommendations.append(
                f"Rollout is at {config.rollout_percentage}%; validate permission consistency before raising it"
            )

        report = MigrationReadinessReport(
            ready_for_migration=not issues,
            issues=issues,
            recommendations=recommendations,
            statistics=statistics,
        )
        logger.info(f"Migration readiness report generated: ready={report.ready_for_migration}, issues={len(issues)}")
        return report
