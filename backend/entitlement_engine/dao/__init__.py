"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from entitlement_engine.dao.base import BaseDAO
from entitlement_engine.dao.user import UserDAO
from entitlement_engine.dao.plan import PlanDAO
from entitlement_engine.dao.subscription import SubscriptionDAO
from entitlement_engine.dao.workspace import WorkspaceDAO
from entitlement_engine.dao.webhook_event import ProviderWebhookEventDAO

__all__ = [
    "BaseDAO",
    "UserDAO",
    "PlanDAO",
    "SubscriptionDAO",
    "WorkspaceDAO",
    "ProviderWebhookEventDAO",
]
