"""
Tenant, plan and subscription records

The authorization core only reads these to derive a WorkspaceContext.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey

from pharmacare_authz.core.database import Base


class PlanTier:
    FREE_TRIAL = "free_trial"
    BASIC = "basic"
    PRO = "pro"
    PHARMILY = "pharmily"
    NETWORK = "network"
    ENTERPRISE = "enterprise"


class SubscriptionStatus:
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    EXPIRED = "expired"
    CANCELED = "canceled"


class Workspace(Base):
    """A pharmacy tenant."""
    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    owner_id = Column(Integer, nullable=True, index=True)
    subscription_status = Column(String(30), nullable=False, default=SubscriptionStatus.TRIAL)
    trial_end_date = Column(DateTime(timezone=True), nullable=True)
    current_subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Workspace(id={self.id}, name='{self.name}')>"


class SubscriptionPlan(Base):
    """
    A purchasable plan.

    features is a JSON list of feature keys; limits is a JSON object of
    numeric caps where null means unlimited.
    """
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    tier = Column(String(30), nullable=False, default=PlanTier.BASIC)
    features = Column(JSON, nullable=False, default=list)
    limits = Column(JSON, nullable=False, default=dict)

    def __repr__(self):
        return f"<SubscriptionPlan(id={self.id}, tier='{self.tier}')>"


class Subscription(Base):
    """A workspace's subscription to a plan."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)
    status = Column(String(30), nullable=False, default=SubscriptionStatus.TRIAL)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Subscription(id={self.id}, status='{self.status}')>"
