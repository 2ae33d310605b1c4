"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from entitlement_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin, utc_now
from entitlement_engine.models.user import User
from entitlement_engine.models.plan import Plan, BillingInterval
from entitlement_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    ENTITLING_STATUSES,
    ACTIVE_DISPLAY_STATUSES,
)
from entitlement_engine.models.workspace import (
    Workspace,
    WorkspaceMember,
    WorkspaceTier,
    Project,
    ProjectFile,
)
from entitlement_engine.models.webhook_event import ProviderWebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "utc_now",
    "User",
    "Plan",
    "BillingInterval",
    "Subscription",
    "SubscriptionStatus",
    "ENTITLING_STATUSES",
    "ACTIVE_DISPLAY_STATUSES",
    "Workspace",
    "WorkspaceMember",
    "WorkspaceTier",
    "Project",
    "ProjectFile",
    "ProviderWebhookEvent",
]
