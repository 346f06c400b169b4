"""
Role model for dynamic RBAC

Roles carry a JSON array of action grants. A grant is either an exact action
("patient.read"), a namespace wildcard ("patient.*") or "*" for everything.
Roles may inherit grants from a parent role.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship

from pharmacare_authz.core.database import Base


class Role(Base):
    """
    System and custom roles for the role-assignment evaluator.

    System roles (is_system=True) cannot be deleted.
    Inactive roles grant nothing, to their holders or to child roles.
    """
    __tablename__ = "rbac_roles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    permissions = Column(JSON, nullable=False, default=list)
    parent_role_id = Column(Integer, ForeignKey("rbac_roles.id", ondelete="SET NULL"), nullable=True)
    is_system = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    parent_role = relationship("Role", remote_side=[id])

    def __repr__(self):
        return f"<Role(id={self.id}, name='{self.name}')>"

    def grants(self, action: str) -> bool:
        """Check whether this role's own permission list covers the action."""
        return permission_granted(self.permissions or [], action)


def permission_granted(grants, action: str) -> bool:
    """
    Check if a list of grants covers an action.

    Supports wildcards:
    - "*" grants all actions
    - "resource.*" grants all actions in that namespace
    """
    if "*" in grants:
        return True

    if action in grants:
        return True

    if "." in action:
        namespace = action.split(".")[0]
        if f"{namespace}.*" in grants:
            return True

    return False


# Default system roles - seeded by migration tooling
SYSTEM_ROLES = [
    {
        "name": "pharmacy_owner",
        "description": "Workspace owner with full tenant access",
        "permissions": ["*"],
        "is_system": True,
    },
    {
        "name": "pharmacist",
        "description": "Licensed pharmacist",
        "permissions": ["patient.*", "clinical_notes.*", "medication.*", "mtr.*", "clinical_intervention.*"],
        "is_system": True,
    },
    {
        "name": "technician",
        "description": "Pharmacy technician",
        "permissions": ["patient.read", "patient.create", "patient.update", "medication.read", "clinical_notes.read"],
        "is_system": True,
    },
    {
        "name": "assistant",
        "description": "Front-desk assistant",
        "permissions": ["patient.read"],
        "is_system": True,
    },
]
