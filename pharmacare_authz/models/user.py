"""
User model

Only the fields the authorization core reads are modelled here. Profile,
credential and clinical data belong to the surrounding application.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from pharmacare_authz.core.database import Base


class SystemRole:
    """Platform-wide roles."""
    SUPER_ADMIN = "super_admin"
    PHARMACY_OUTLET = "pharmacy_outlet"
    PHARMACY_TEAM = "pharmacy_team"
    PHARMACIST = "pharmacist"
    INTERN_PHARMACIST = "intern_pharmacist"


class WorkplaceRole:
    """Tenant-scoped roles."""
    OWNER = "Owner"
    PHARMACIST = "Pharmacist"
    STAFF = "Staff"
    TECHNICIAN = "Technician"
    CASHIER = "Cashier"
    ASSISTANT = "Assistant"


class UserStatus:
    ACTIVE = "active"
    PENDING = "pending"
    LICENSE_PENDING = "license_pending"
    SUSPENDED = "suspended"


class LicenseStatus:
    APPROVED = "approved"
    PENDING = "pending"
    REJECTED = "rejected"
    NOT_REQUIRED = "not_required"


class User(Base):
    """
    User account as seen by the permission evaluators.

    assigned_roles is the denormalised list of dynamic role ids; a non-empty
    list means the user has been migrated to the role-assignment model.
    role_last_modified_at is stamped by migration tooling.
    """
    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_workplace_role", "workplace_id", "workplace_role"),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)

    system_role = Column(String(50), nullable=False, default=SystemRole.PHARMACIST)
    workplace_id = Column(Integer, nullable=True, index=True)
    workplace_role = Column(String(50), nullable=True)

    status = Column(String(30), nullable=False, default=UserStatus.PENDING)
    license_status = Column(String(30), nullable=True)

    # Dynamic RBAC fields
    assigned_roles = Column(JSON(none_as_null=True), nullable=True)
    direct_permissions = Column(JSON(none_as_null=True), nullable=True)
    denied_permissions = Column(JSON(none_as_null=True), nullable=True)
    role_last_modified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', system_role='{self.system_role}')>"

    @property
    def is_super_admin(self) -> bool:
        return self.system_role == SystemRole.SUPER_ADMIN
