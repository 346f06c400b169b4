"""
Workspace context resolution

Builds the WorkspaceContext snapshot the evaluators consume from the
workspace, subscription and plan records. The evaluators never load these
themselves; request handlers call load_workspace_context once per request.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmacare_authz.models.workspace import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    Workspace,
)
from pharmacare_authz.services.permission_types import WorkspaceContext
from pharmacare_authz.services.role_hierarchy import DEFAULT_FEATURES, TIER_FEATURES

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; stored values are UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plan_features(plan) -> List[str]:
    features: List[str] = []
    sources = [
        DEFAULT_FEATURES,
        getattr(plan, "features", None) or [],
        TIER_FEATURES.get(getattr(plan, "tier", None), []),
    ]
    for source in sources:
        for feature in source:
            if feature not in features:
                features.append(feature)
    return features


def build_workspace_context(
    workspace=None,
    subscription=None,
    plan=None,
    now: Optional[datetime] = None,
) -> WorkspaceContext:
    """
    Derive permissions, limits and subscription state for a workspace.

    is_subscription_active covers a paid, unexpired subscription only. A
    running trial is reported through is_trial / is_trial_expired.

    Args:
        workspace: Workspace record, or None for users without a workspace
        subscription: Current subscription, if any
        plan: Plan of that subscription, if any
        now: Reference time (defaults to the current UTC time)

    Returns:
        WorkspaceContext; an empty one when workspace is None
    """
    if workspace is None:
        return WorkspaceContext()

    now = now or datetime.now(timezone.utc)

    if subscription is not None:
        status = subscription.status
        trial_end = _as_utc(subscription.trial_ends_at) or _as_utc(getattr(workspace, "trial_end_date", None))
    else:
        status = workspace.subscription_status
        trial_end = _as_utc(workspace.trial_end_date)

    is_trial_expired = (
        status == SubscriptionStatus.TRIAL
        and trial_end is not None
        and now > trial_end
    )

    # Paid subscriptions only; trials pass through allow_trial_access
    is_subscription_active = False
    if status == SubscriptionStatus.ACTIVE:
        ends_at = _as_utc(getattr(subscription, "ends_at", None))
        is_subscription_active = ends_at is None or ends_at > now

    return WorkspaceContext(
        workspace=workspace,
        subscription=subscription,
        plan=plan,
        permissions=_plan_features(plan) if plan is not None else list(DEFAULT_FEATURES),
        limits=dict(getattr(plan, "limits", None) or {}),
        is_subscription_active=is_subscription_active,
        is_trial_expired=is_trial_expired,
    )


async def load_workspace_context(db: AsyncSession, workspace_id: Optional[int]) -> WorkspaceContext:
    """Load a workspace with its current subscription and plan."""
    if workspace_id is None:
        return WorkspaceContext()

    result = await db.execute(select(Workspace).where(Workspace.id == workspace_id))
    workspace = result.scalar_one_or_none()
    if workspace is None:
        logger.warning(f"Workspace {workspace_id} not found, using empty context")
        return WorkspaceContext()

    if workspace.current_subscription_id is not None:
        result = await db.execute(
            select(Subscription).where(Subscription.id == workspace.current_subscription_id)
        )
    else:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.workspace_id == workspace.id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
    subscription = result.scalar_one_or_none()

    plan = None
    if subscription is not None:
        result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.id == subscription.plan_id))
        plan = result.scalar_one_or_none()

    return build_workspace_context(workspace, subscription, plan)
