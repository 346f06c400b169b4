from pharmacare_authz.models.user import User
from pharmacare_authz.models.role import Role
from pharmacare_authz.models.user_role import UserRole
from pharmacare_authz.models.feature_flag import FeatureFlag
from pharmacare_authz.models.workspace import Workspace, SubscriptionPlan, Subscription

__all__ = [
    "User",
    "Role",
    "UserRole",
    "FeatureFlag",
    "Workspace",
    "SubscriptionPlan",
    "Subscription",
]
