"""
User-Role assignment table for dynamic RBAC

Role assignments with audit trail. user_id deliberately has no foreign key:
assignments outliving their user are reported as orphans by the migration
readiness report instead of being cascaded away silently.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, Boolean, ForeignKey, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from pharmacare_authz.core.database import Base


class UserRole(Base):
    """
    Junction table linking users to roles.

    Supports:
    - Time-limited role assignments (expires_at)
    - Soft revocation (is_active)
    - Audit trail (assigned_by, assigned_at)
    """
    __tablename__ = "rbac_user_roles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    role_id = Column(Integer, ForeignKey("rbac_roles.id", ondelete="RESTRICT"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    assigned_by = Column(Integer, nullable=True)
    assigned_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=True)

    role = relationship("Role")

    __table_args__ = (
        UniqueConstraint('user_id', 'role_id', name='uq_rbac_user_role'),
        Index('ix_rbac_user_roles_user_id', 'user_id', 'is_active'),
        Index('ix_rbac_user_roles_expires', 'expires_at', postgresql_where=expires_at.isnot(None)),
    )

    def __repr__(self):
        return f"<UserRole(user_id={self.user_id}, role_id={self.role_id})>"

    @property
    def is_expired(self) -> bool:
        """Check if this role assignment has expired."""
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        # SQLite hands back naive values; stored times are UTC
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) > expires_at
