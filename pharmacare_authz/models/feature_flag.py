"""
Feature Flag model for runtime toggles

Compatibility-router configuration lives here under rbac_* keys:
- rbac_enable_dynamic
- rbac_enable_legacy_fallback
- rbac_enable_deprecation_warnings
- rbac_migration_phase
- rbac_rollout_percentage

No deployment required for toggling.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Index

from pharmacare_authz.core.database import Base


class FeatureFlag(Base):
    """
    Runtime feature flags keyed by name.

    `value` holds a JSON scalar (bool, int, str) so a single table can back
    boolean toggles, percentages and phase names alike.
    """
    __tablename__ = "feature_flags"
    __table_args__ = (
        Index("idx_feature_flags_active", "key", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)

    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Audit trail
    last_modified_by = Column(String(100), nullable=True)
    last_modified_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self):
        return f"<FeatureFlag(key={self.key}, value={self.value!r}, active={self.is_active})>"
