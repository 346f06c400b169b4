"""
Feature Flags Service

- 30-second cache TTL for performance
- Key-prefix lookups (rbac_* flags drive the compatibility router)
- Upserts invalidate the cache so the next read sees the write

Usage:
    store = FeatureFlagStore()

    # All active rbac_* flags as {key: value}
    flags = await store.get_prefixed("rbac_")

    # Persist a single value
    await store.set_value("rbac_rollout_percentage", 25, modified_by="ops@pharmacare")
"""
import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select

from pharmacare_authz.core.config import settings
from pharmacare_authz.core.database import get_db_session
from pharmacare_authz.core.exceptions import FeatureFlagPersistenceError
from pharmacare_authz.models.feature_flag import FeatureFlag

logger = logging.getLogger(__name__)


class FeatureFlagCache:
    """
    In-memory cache for feature flags with TTL.

    Cache is refreshed when stale (> cache_ttl seconds since last refresh).
    A refresh builds a new dict and swaps the reference, so readers never
    see a half-loaded cache.
    """

    def __init__(self, cache_ttl: int = 30):
        self._cache: Dict[str, FeatureFlag] = {}
        self._cache_ttl = cache_ttl  # seconds
        self._last_refresh: float = 0

    @property
    def is_stale(self) -> bool:
        """Check if cache needs refresh."""
        return time.time() - self._last_refresh > self._cache_ttl

    def replace(self, flags: List[FeatureFlag]) -> None:
        """Swap in a freshly loaded flag set."""
        self._cache = {flag.key: flag for flag in flags}
        self._last_refresh = time.time()

    def get(self, key: str) -> Optional[FeatureFlag]:
        return self._cache.get(key)

    def get_by_prefix(self, prefix: str) -> List[FeatureFlag]:
        """Get all flags whose key starts with prefix."""
        return [
            flag for key, flag in self._cache.items()
            if key.startswith(prefix)
        ]

    def is_empty(self) -> bool:
        return not self._cache

    def clear(self) -> None:
        """Clear the cache (forces refresh on next access)."""
        self._cache = {}
        self._last_refresh = 0


class FeatureFlagStore:
    """
    Read/write access to the feature_flags table.

    session_factory must be an async context manager factory yielding an
    AsyncSession; it defaults to get_db_session.
    """

    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        cache_ttl: Optional[int] = None,
    ):
        self._session_factory = session_factory or get_db_session
        self._cache = FeatureFlagCache(
            cache_ttl=cache_ttl if cache_ttl is not None else settings.FEATURE_FLAG_CACHE_SECONDS
        )

    async def refresh(self) -> None:
        """
        Refresh the cache from database.

        Keeps the stale cache on failure; re-raises only if there is
        nothing cached to fall back on.
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(FeatureFlag))
                flags = list(result.scalars().all())

            self._cache.replace(flags)
            logger.debug(f"Feature flags cache refreshed: {len(flags)} flags loaded")

        except Exception as e:
            logger.error(f"Failed to refresh feature flags cache: {e}")
            if self._cache.is_empty():
                raise

    async def _ensure_cache_fresh(self) -> None:
        if self._cache.is_stale:
            await self.refresh()

    async def get_prefixed(self, prefix: str) -> Dict[str, Any]:
        """
        Get the values of all active flags under a key prefix.

        Args:
            prefix: Key prefix, e.g. 'rbac_'

        Returns:
            Dict of flag key -> stored value
        """
        await self._ensure_cache_fresh()
        return {
            flag.key: flag.value
            for flag in self._cache.get_by_prefix(prefix)
            if flag.is_active
        }

    async def get_value(self, key: str, default: Any = None) -> Any:
        """Get a single active flag value, or default if missing/inactive."""
        await self._ensure_cache_fresh()
        flag = self._cache.get(key)
        if flag is None or not flag.is_active:
            return default
        return flag.value

    async def set_value(self, key: str, value: Any, modified_by: Optional[str] = None) -> None:
        """
        Upsert a flag value and mark it active.

        Raises:
            FeatureFlagPersistenceError: If the write fails
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(FeatureFlag).where(FeatureFlag.key == key))
                flag = result.scalar_one_or_none()

                if flag is None:
                    flag = FeatureFlag(key=key)
                    db.add(flag)

                flag.value = value
                flag.is_active = True
                flag.last_modified_by = modified_by
                flag.last_modified_at = datetime.now(timezone.utc)
                await db.flush()
        except Exception as e:
            raise FeatureFlagPersistenceError(key, details={"error": str(e)}) from e
        finally:
            self.invalidate_cache()

    def invalidate_cache(self) -> None:
        """
        Invalidate the cache (forces refresh on next access).

        Call this after updating flags in the database.
        """
        self._cache.clear()
        logger.debug("Feature flags cache invalidated")
