"""
Tests for permission matrix validation and caching.
"""
import asyncio

import pytest

from pharmacare_authz.core.exceptions import PermissionMatrixError
from pharmacare_authz.services.permission_matrix import (
    DEFAULT_PERMISSION_MATRIX,
    PermissionMatrixCache,
    PermissionRequirement,
    parse_permission_matrix,
)


class TestParsePermissionMatrix:

    def test_default_matrix_is_valid(self):
        matrix = parse_permission_matrix(DEFAULT_PERMISSION_MATRIX)
        assert set(matrix.keys()) == set(DEFAULT_PERMISSION_MATRIX.keys())
        assert isinstance(matrix["patient.create"], PermissionRequirement)

    def test_parsed_matrix_is_read_only(self):
        matrix = parse_permission_matrix({"patient.read": {}})
        with pytest.raises(TypeError):
            matrix["patient.read"] = PermissionRequirement()

    def test_unknown_requirement_field_rejected(self):
        with pytest.raises(PermissionMatrixError) as exc_info:
            parse_permission_matrix({"patient.read": {"workplaceRoles": ["Owner"]}})
        assert exc_info.value.details["action"] == "patient.read"

    def test_empty_entry_means_no_requirements(self):
        requirement = parse_permission_matrix({"dashboard.view": {}})["dashboard.view"]
        assert requirement.workplace_roles is None
        assert requirement.requires_active_subscription is False


class TestPermissionMatrixCache:

    @pytest.mark.asyncio
    async def test_loads_lazily_and_caches(self):
        calls = []

        def loader():
            calls.append(1)
            return {"patient.read": {"workplace_roles": ["Owner"]}}

        cache = PermissionMatrixCache(loader=loader, cache_ttl=300)
        assert cache.is_stale

        first = await cache.get()
        second = await cache.get()

        assert first is second
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_async_loader(self):
        async def loader():
            return {"patient.read": {}}

        cache = PermissionMatrixCache(loader=loader)
        assert "patient.read" in await cache.get()

    @pytest.mark.asyncio
    async def test_refresh_swaps_whole_matrix(self):
        versions = [
            {"patient.read": {}},
            {"patient.read": {}, "patient.create": {}},
        ]

        cache = PermissionMatrixCache(loader=lambda: versions.pop(0), cache_ttl=300)
        old = await cache.get()
        new = await cache.refresh()

        assert set(old.keys()) == {"patient.read"}
        assert set(new.keys()) == {"patient.read", "patient.create"}
        assert await cache.get() is new

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self):
        state = {"fail": False}

        def loader():
            if state["fail"]:
                raise RuntimeError("config store unreachable")
            return {"patient.read": {}}

        cache = PermissionMatrixCache(loader=loader, cache_ttl=0)
        original = await cache.get()

        state["fail"] = True
        assert await cache.refresh() is original

    @pytest.mark.asyncio
    async def test_invalid_refresh_keeps_previous_snapshot(self):
        versions = [{"patient.read": {}}, {"patient.read": {"bogus": True}}]
        cache = PermissionMatrixCache(loader=lambda: versions.pop(0))
        original = await cache.get()

        assert await cache.refresh() is original

    @pytest.mark.asyncio
    async def test_first_load_failure_raises(self):
        def loader():
            raise RuntimeError("boom")

        cache = PermissionMatrixCache(loader=loader)
        with pytest.raises(PermissionMatrixError):
            await cache.get()

    @pytest.mark.asyncio
    async def test_concurrent_readers_share_one_load(self):
        calls = []

        async def loader():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"patient.read": {}}

        cache = PermissionMatrixCache(loader=loader, cache_ttl=300)
        results = await asyncio.gather(*(cache.get() for _ in range(10)))

        assert len(calls) == 1
        assert all(result is results[0] for result in results)

    @pytest.mark.asyncio
    async def test_stale_reader_served_while_refresh_runs(self):
        release = asyncio.Event()
        calls = []

        async def loader():
            calls.append(1)
            if len(calls) == 1:
                return {"patient.read": {}}
            await release.wait()
            return {"patient.read": {}, "patient.create": {}}

        cache = PermissionMatrixCache(loader=loader, cache_ttl=0.05)
        original = await cache.get()
        await asyncio.sleep(0.1)

        # Stale now; the reader returns at once with the old snapshot
        served = await asyncio.wait_for(cache.get(), timeout=0.5)
        assert served is original
        assert cache.is_refreshing

        # A second stale reader joins the running refresh
        assert await asyncio.wait_for(cache.get(), timeout=0.5) is original
        await asyncio.sleep(0)
        assert len(calls) == 2

        release.set()
        await cache._refresh_task
        assert "patient.create" in await cache.get()

    @pytest.mark.asyncio
    async def test_background_refresh_failure_keeps_snapshot(self):
        state = {"fail": False}

        def loader():
            if state["fail"]:
                raise RuntimeError("config store unreachable")
            return {"patient.read": {}}

        cache = PermissionMatrixCache(loader=loader, cache_ttl=0.05)
        original = await cache.get()
        await asyncio.sleep(0.1)

        state["fail"] = True
        assert await cache.get() is original
        await cache._refresh_task
        assert not cache.is_refreshing
        assert await cache.get() is original
