"""
Tests for the dynamic/legacy compatibility router.
"""
import asyncio
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from pharmacare_authz.core.exceptions import (
    ConfigurationError,
    DynamicEvaluationError,
    FeatureFlagPersistenceError,
)
from pharmacare_authz.services.backward_compatibility import (
    BackwardCompatibilityService,
    user_rollout_bucket,
)
from pharmacare_authz.services.permission_types import (
    CompatibilityConfig,
    MigrationPhase,
    PermissionMethod,
    PermissionResult,
    ResultSource,
)


def allow(**kwargs) -> PermissionResult:
    return PermissionResult(allowed=True, **kwargs)


def deny(reason="denied", **kwargs) -> PermissionResult:
    return PermissionResult(allowed=False, reason=reason, **kwargs)


@pytest.fixture
def legacy_service():
    service = AsyncMock()
    service.check_permission = AsyncMock(return_value=allow())
    return service


@pytest.fixture
def dynamic_service():
    service = AsyncMock()
    service.check_permission = AsyncMock(return_value=allow(source=ResultSource.ROLE))
    return service


@pytest.fixture
def make_router(legacy_service, dynamic_service, mock_flag_store, mock_user_directory):
    def _make(**config) -> BackwardCompatibilityService:
        return BackwardCompatibilityService(
            permission_service=legacy_service,
            dynamic_service=dynamic_service,
            flag_store=mock_flag_store,
            user_directory=mock_user_directory,
            config=CompatibilityConfig(**config),
        )

    return _make


DYNAMIC_ON = {"enable_dynamic_rbac": True, "rollout_percentage": 100, "migration_phase": MigrationPhase.VALIDATION}


class TestDeterminePermissionMethod:

    def test_force_method_wins(self, make_router, make_user):
        router = make_router()
        assert router.determine_permission_method(make_user(), force_method="dynamic") == PermissionMethod.DYNAMIC

        router = make_router(**DYNAMIC_ON)
        assert router.determine_permission_method(make_user(), PermissionMethod.LEGACY) == PermissionMethod.LEGACY

    @pytest.mark.parametrize("phase", list(MigrationPhase))
    def test_dynamic_disabled_always_legacy(self, make_router, make_user, phase):
        router = make_router(enable_dynamic_rbac=False, rollout_percentage=100, migration_phase=phase)
        user = make_user(assigned_roles=[1, 2], role_last_modified_at=datetime.now(timezone.utc))
        assert router.determine_permission_method(user) == PermissionMethod.LEGACY

    def test_zero_rollout_always_legacy(self, make_router, make_user):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=0, migration_phase=MigrationPhase.CLEANUP)
        for user_id in range(1, 500):
            assert router.determine_permission_method(make_user(id=user_id)) == PermissionMethod.LEGACY

    def test_full_rollout_reaches_phase_logic(self, make_router, make_user):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=100, migration_phase=MigrationPhase.CLEANUP)
        for user_id in range(1, 500):
            assert router.determine_permission_method(make_user(id=user_id)) == PermissionMethod.DYNAMIC

    def test_rollout_is_deterministic(self, make_router, make_user):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=37, migration_phase=MigrationPhase.CLEANUP)
        for user_id in range(1, 200):
            user = make_user(id=user_id)
            methods = {router.determine_permission_method(user) for _ in range(5)}
            assert len(methods) == 1

    def test_rollout_cohort_follows_bucket(self, make_router, make_user):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=50, migration_phase=MigrationPhase.CLEANUP)
        for user_id in range(1, 200):
            expected = PermissionMethod.DYNAMIC if user_rollout_bucket(user_id) < 50 else PermissionMethod.LEGACY
            assert router.determine_permission_method(make_user(id=user_id)) == expected

    def test_bucket_is_stable_and_in_range(self):
        assert user_rollout_bucket(42) == user_rollout_bucket("42")
        assert all(0 <= user_rollout_bucket(user_id) < 100 for user_id in range(1000))

    def test_assigned_roles_go_dynamic_in_preparation(self, make_router, make_user):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=100)
        assert router.determine_permission_method(make_user(assigned_roles=[3])) == PermissionMethod.DYNAMIC
        assert router.determine_permission_method(make_user(assigned_roles=[])) == PermissionMethod.LEGACY

    def test_migration_phase_requires_migration_stamp(self, make_router, make_user):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=100, migration_phase=MigrationPhase.MIGRATION)
        stamped = make_user(role_last_modified_at=datetime.now(timezone.utc))
        assert router.determine_permission_method(stamped) == PermissionMethod.DYNAMIC
        assert router.determine_permission_method(make_user()) == PermissionMethod.LEGACY

    @pytest.mark.parametrize("phase", [MigrationPhase.VALIDATION, MigrationPhase.CLEANUP])
    def test_late_phases_go_dynamic(self, make_router, make_user, phase):
        router = make_router(enable_dynamic_rbac=True, rollout_percentage=100, migration_phase=phase)
        assert router.determine_permission_method(make_user()) == PermissionMethod.DYNAMIC


class TestCheckPermission:

    @pytest.mark.asyncio
    async def test_legacy_path(self, make_router, make_user, active_context, legacy_service, dynamic_service):
        router = make_router()
        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert result.allowed
        assert result.source == ResultSource.LEGACY
        assert result.response_time is not None and result.response_time >= 0
        dynamic_service.check_permission.assert_not_called()
        assert router.get_metrics()["legacy_checks"] == 1

    @pytest.mark.asyncio
    async def test_dynamic_allow_keeps_dynamic_source(self, make_router, make_user, active_context, legacy_service):
        router = make_router(**DYNAMIC_ON)
        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert result.allowed
        assert result.source == ResultSource.ROLE
        legacy_service.check_permission.assert_not_called()
        assert router.get_metrics()["dynamic_checks"] == 1

    @pytest.mark.asyncio
    async def test_dynamic_source_defaults_to_dynamic(self, make_router, make_user, active_context, dynamic_service):
        dynamic_service.check_permission.return_value = allow()
        router = make_router(**DYNAMIC_ON)
        result = await router.check_permission(active_context, make_user(), "patient.read")
        assert result.source == ResultSource.DYNAMIC

    @pytest.mark.asyncio
    async def test_dynamic_deny_legacy_allow_falls_back(
        self, make_router, make_user, active_context, dynamic_service,
    ):
        dynamic_service.check_permission.return_value = deny("No matching permissions found")
        router = make_router(enable_legacy_fallback=True, **DYNAMIC_ON)

        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert result.allowed
        assert result.source == ResultSource.LEGACY_FALLBACK
        metrics = router.get_metrics()
        assert metrics["fallback_usage"] == 1
        assert metrics["dynamic_checks"] == 1

    @pytest.mark.asyncio
    async def test_both_deny_returns_dynamic_denial(
        self, make_router, make_user, active_context, dynamic_service, legacy_service,
    ):
        dynamic_service.check_permission.return_value = deny("No matching permissions found", source=ResultSource.NONE)
        legacy_service.check_permission.return_value = deny("Insufficient workplace role")
        router = make_router(enable_legacy_fallback=True, **DYNAMIC_ON)

        result = await router.check_permission(active_context, make_user(), "patient.delete")

        assert not result.allowed
        assert result.reason == "No matching permissions found"
        assert router.get_metrics()["fallback_usage"] == 0

    @pytest.mark.asyncio
    async def test_dynamic_deny_without_fallback(
        self, make_router, make_user, active_context, dynamic_service, legacy_service,
    ):
        dynamic_service.check_permission.return_value = deny()
        router = make_router(enable_legacy_fallback=False, **DYNAMIC_ON)

        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert not result.allowed
        legacy_service.check_permission.assert_not_called()

    @pytest.mark.asyncio
    async def test_dynamic_error_with_fallback(self, make_router, make_user, active_context, dynamic_service):
        dynamic_service.check_permission.side_effect = DynamicEvaluationError("roles unavailable")
        router = make_router(enable_legacy_fallback=True, **DYNAMIC_ON)

        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert result.allowed
        assert result.source == ResultSource.LEGACY_ERROR_FALLBACK
        metrics = router.get_metrics()
        assert metrics["fallback_usage"] == 1
        assert metrics["errors"] == 0

    @pytest.mark.asyncio
    async def test_dynamic_error_without_fallback_is_contained(
        self, make_router, make_user, active_context, dynamic_service,
    ):
        dynamic_service.check_permission.side_effect = DynamicEvaluationError("roles unavailable")
        router = make_router(enable_legacy_fallback=False, **DYNAMIC_ON)

        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert not result.allowed
        assert result.source == ResultSource.ERROR_FALLBACK
        assert result.reason == "Permission check failed"
        assert router.get_metrics()["errors"] == 1

    @pytest.mark.asyncio
    async def test_legacy_error_is_contained(self, make_router, make_user, active_context, legacy_service):
        legacy_service.check_permission.side_effect = RuntimeError("matrix exploded")
        router = make_router()

        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert not result.allowed
        assert result.source == ResultSource.ERROR_FALLBACK

    @pytest.mark.asyncio
    async def test_metrics_can_be_skipped(self, make_router, make_user, active_context):
        router = make_router()
        result = await router.check_permission(active_context, make_user(), "patient.read", enable_metrics=False)
        assert result.response_time is None
        assert router.get_metrics()["average_response_time"] == 0.0

    @pytest.mark.asyncio
    async def test_deprecation_warning_logged_for_legacy(self, make_router, make_user, active_context, caplog):
        router = make_router(enable_deprecation_warnings=True)
        with caplog.at_level(logging.WARNING, logger="pharmacare_authz.services.backward_compatibility"):
            await router.check_permission(active_context, make_user(id=7, email="tech@pharmacy.test"), "patient.read")

        records = [r for r in caplog.records if "DEPRECATION" in r.getMessage()]
        assert len(records) == 1
        assert records[0].rbac_action == "patient.read"
        assert records[0].user_id == 7
        assert records[0].user_email == "tech@pharmacy.test"
        assert records[0].migration_phase == "preparation"

    @pytest.mark.asyncio
    async def test_no_deprecation_warning_when_disabled(self, make_router, make_user, active_context, caplog):
        router = make_router(enable_deprecation_warnings=False)
        with caplog.at_level(logging.WARNING, logger="pharmacare_authz.services.backward_compatibility"):
            await router.check_permission(active_context, make_user(), "patient.read")
        assert not [r for r in caplog.records if "DEPRECATION" in r.getMessage()]

    @pytest.mark.asyncio
    async def test_concurrent_checks_keep_metrics_sane(
        self, make_router, make_user, active_context, dynamic_service,
    ):
        async def flaky(user, action, context=None):
            await asyncio.sleep(0)
            if user.id % 3 == 0:
                raise DynamicEvaluationError("flaky")
            return allow() if user.id % 2 else deny()

        dynamic_service.check_permission.side_effect = flaky
        router = make_router(enable_legacy_fallback=False, **DYNAMIC_ON)

        n = 60
        results = await asyncio.gather(*(
            router.check_permission(active_context, make_user(id=i), "patient.read") for i in range(1, n + 1)
        ))

        metrics = router.get_metrics()
        assert len(results) == n
        assert metrics["dynamic_checks"] + metrics["legacy_checks"] >= 0
        assert metrics["errors"] == n // 3
        assert metrics["errors"] <= n
        assert metrics["average_response_time"] >= 0


class TestConfiguration:

    @pytest.mark.asyncio
    async def test_initialize_reads_rbac_flags(self, make_router, mock_flag_store):
        mock_flag_store.get_prefixed.return_value = {
            "rbac_enable_dynamic": True,
            "rbac_enable_legacy_fallback": False,
            "rbac_enable_deprecation_warnings": "false",
            "rbac_migration_phase": "validation",
            "rbac_rollout_percentage": 25,
        }
        router = make_router()

        config = await router.initialize()

        mock_flag_store.get_prefixed.assert_awaited_once_with("rbac_")
        assert config == CompatibilityConfig(
            enable_dynamic_rbac=True,
            enable_legacy_fallback=False,
            enable_deprecation_warnings=False,
            migration_phase=MigrationPhase.VALIDATION,
            rollout_percentage=25,
        )
        assert router.is_initialized

    @pytest.mark.asyncio
    async def test_invalid_flag_values_ignored(self, make_router, mock_flag_store):
        mock_flag_store.get_prefixed.return_value = {
            "rbac_enable_dynamic": True,
            "rbac_migration_phase": "launch",
            "rbac_rollout_percentage": 150,
        }
        config = await make_router().initialize()

        assert config.enable_dynamic_rbac is True
        assert config.migration_phase == MigrationPhase.PREPARATION
        assert config.rollout_percentage == 0

    @pytest.mark.asyncio
    async def test_initialize_failure_forces_legacy(self, make_router, mock_flag_store):
        mock_flag_store.get_prefixed.side_effect = ConnectionError("db down")
        router = make_router(enable_dynamic_rbac=True, enable_legacy_fallback=False, rollout_percentage=100)

        config = await router.initialize()

        assert config.enable_dynamic_rbac is False
        assert config.enable_legacy_fallback is True
        assert router.is_initialized

    @pytest.mark.asyncio
    async def test_load_configuration_wraps_store_errors(self, make_router, mock_flag_store):
        mock_flag_store.get_prefixed.side_effect = ConnectionError("db down")
        with pytest.raises(ConfigurationError):
            await make_router().load_configuration()

    @pytest.mark.asyncio
    async def test_update_swaps_config_and_persists_each_field(self, make_router, mock_flag_store):
        router = make_router()
        before = router.config

        result = await router.update_configuration(
            {"enable_dynamic_rbac": True, "migration_phase": "migration", "rollout_percentage": 10},
            modified_by="ops@pharmacy.test",
        )

        assert before == CompatibilityConfig()
        assert router.config is result.config
        assert router.config.enable_dynamic_rbac is True
        assert router.config.migration_phase == MigrationPhase.MIGRATION
        assert router.config.rollout_percentage == 10
        assert sorted(result.persisted_flags) == [
            "rbac_enable_dynamic", "rbac_migration_phase", "rbac_rollout_percentage",
        ]
        mock_flag_store.set_value.assert_any_await("rbac_migration_phase", "migration", modified_by="ops@pharmacy.test")
        mock_flag_store.set_value.assert_any_await("rbac_rollout_percentage", 10, modified_by="ops@pharmacy.test")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        FeatureFlagPersistenceError("rbac_enable_dynamic"),
        ConnectionError("flag store unreachable"),
    ])
    async def test_persistence_failure_keeps_memory_update(self, make_router, mock_flag_store, error):
        async def set_value(key, value, modified_by=None):
            if key == "rbac_enable_dynamic":
                raise error

        mock_flag_store.set_value.side_effect = set_value
        router = make_router()

        result = await router.update_configuration({"enable_dynamic_rbac": True, "rollout_percentage": 50})

        assert router.config.enable_dynamic_rbac is True
        assert router.config.rollout_percentage == 50
        assert result.failed_flags == ["rbac_enable_dynamic"]
        assert result.persisted_flags == ["rbac_rollout_percentage"]

    @pytest.mark.asyncio
    async def test_invalid_update_rejected_without_change(self, make_router):
        router = make_router()
        with pytest.raises(ValidationError):
            await router.update_configuration({"rollout_percentage": 101})
        with pytest.raises(ValidationError):
            await router.update_configuration({"migration_phase": "launch"})
        assert router.config == CompatibilityConfig()

    @pytest.mark.asyncio
    async def test_in_flight_check_uses_config_snapshot(
        self, make_router, make_user, active_context, legacy_service,
    ):
        router = make_router()

        async def slow_legacy(context, user, action):
            await router.update_configuration({"enable_dynamic_rbac": True, "rollout_percentage": 100,
                                               "migration_phase": "cleanup"})
            return allow()

        legacy_service.check_permission.side_effect = slow_legacy
        result = await router.check_permission(active_context, make_user(), "patient.read")

        assert result.source == ResultSource.LEGACY
        assert router.determine_permission_method(make_user()) == PermissionMethod.DYNAMIC


class TestMetrics:

    @pytest.mark.asyncio
    async def test_get_metrics_includes_config(self, make_router, make_user, active_context):
        router = make_router()
        await router.check_permission(active_context, make_user(), "patient.read")

        metrics = router.get_metrics()
        assert metrics["legacy_checks"] == 1
        assert metrics["config"]["migration_phase"] == "preparation"
        assert metrics["average_response_time"] >= 0

    @pytest.mark.asyncio
    async def test_reset(self, make_router, make_user, active_context):
        router = make_router()
        await router.check_permission(active_context, make_user(), "patient.read")
        router.reset_metrics()

        metrics = router.get_metrics()
        assert metrics["legacy_checks"] == 0
        assert metrics["average_response_time"] == 0.0


class TestConsistencyValidation:

    @pytest.mark.asyncio
    async def test_reports_disagreements(self, make_router, make_user, active_context, dynamic_service, legacy_service):
        async def dynamic(user, action, context=None):
            return allow() if action == "patient.read" else deny("No matching permissions found")

        async def legacy(context, user, action):
            return allow() if action in ("patient.read", "patient.create") else deny("Insufficient workplace role")

        dynamic_service.check_permission.side_effect = dynamic
        legacy_service.check_permission.side_effect = legacy
        router = make_router(**DYNAMIC_ON)

        report = await router.validate_permission_consistency(
            active_context, make_user(), ["patient.read", "patient.create", "patient.delete"]
        )

        assert not report.consistent
        assert report.checked == 3
        assert report.inconsistencies == [{
            "action": "patient.create",
            "dynamic_result": False,
            "legacy_result": True,
            "dynamic_reason": "No matching permissions found",
            "legacy_reason": None,
        }]
        # Direct evaluator calls leave the counters alone
        assert router.get_metrics()["fallback_usage"] == 0

    @pytest.mark.asyncio
    async def test_consistent(self, make_router, make_user, active_context):
        report = await make_router().validate_permission_consistency(active_context, make_user(), ["patient.read"])
        assert report.consistent
        assert report.to_dict()["inconsistencies"] == []

    @pytest.mark.asyncio
    async def test_evaluator_error_recorded(self, make_router, make_user, active_context, dynamic_service):
        dynamic_service.check_permission.side_effect = DynamicEvaluationError("boom")
        report = await make_router().validate_permission_consistency(active_context, make_user(), ["patient.read"])

        assert not report.consistent
        assert report.inconsistencies[0]["dynamic_reason"] == "Validation error"
        assert report.inconsistencies[0]["legacy_reason"] == "Validation error"


class TestMigrationReadiness:

    @pytest.mark.asyncio
    async def test_ready(self, make_router):
        report = await make_router(enable_dynamic_rbac=True, rollout_percentage=100).generate_migration_readiness_report()

        assert report.ready_for_migration
        assert report.issues == []
        assert report.statistics == {
            "total_users": 10,
            "migrated_users": 10,
            "users_with_dynamic_roles": 8,
            "users_with_direct_permissions": 2,
            "orphaned_role_assignments": 0,
        }

    @pytest.mark.asyncio
    async def test_not_ready(self, make_router, mock_user_directory):
        mock_user_directory.count_migrated_users.return_value = 7
        mock_user_directory.count_orphaned_role_assignments.return_value = 2

        report = await make_router().generate_migration_readiness_report()

        assert not report.ready_for_migration
        assert len(report.issues) == 3
        assert any("Dynamic RBAC is disabled" in issue for issue in report.issues)
        assert any("3 users" in issue for issue in report.issues)
        assert any("2 role assignments" in issue for issue in report.issues)
        assert report.recommendations

    @pytest.mark.asyncio
    async def test_requires_user_directory(self, legacy_service, dynamic_service, mock_flag_store):
        router = BackwardCompatibilityService(legacy_service, dynamic_service, mock_flag_store)
        with pytest.raises(ConfigurationError):
            await router.generate_migration_readiness_report()


class TestResolveUserPermissions:

    @pytest.mark.asyncio
    async def test_dynamic_user_gets_union_with_fallback(self, make_user, active_context, mock_flag_store):
        from pharmacare_authz.services.permission_matrix import PermissionMatrixCache
        from pharmacare_authz.services.permission_service import PermissionService

        legacy = PermissionService(matrix_cache=PermissionMatrixCache(loader=lambda: {
            "patient.read": {"workplace_roles": ["Technician"]},
            "patient.delete": {"workplace_roles": ["Owner"]},
            "mtr.read": {"workplace_roles": ["Owner"]},
        }))
        dynamic = AsyncMock()
        dynamic.check_permission = AsyncMock(
            side_effect=lambda user, action, context=None: allow() if action == "mtr.read" else deny()
        )
        user = make_user(workplace_role="Technician")

        router = BackwardCompatibilityService(legacy, dynamic, mock_flag_store, config=CompatibilityConfig(**DYNAMIC_ON))
        assert await router.resolve_user_permissions(active_context, user) == ["mtr.read", "patient.read"]

        router = BackwardCompatibilityService(
            legacy, dynamic, mock_flag_store,
            config=CompatibilityConfig(enable_legacy_fallback=False, **DYNAMIC_ON),
        )
        assert await router.resolve_user_permissions(active_context, user) == ["mtr.read"]
        assert router.get_metrics()["dynamic_checks"] == 0
