"""
Entitlement calculation.

WHAT: Derives what a user may do from their persisted subscription:
effective feature limits, limit checks, subscription-state summaries,
the app-level trial, workspace access locks, and the workspace tier.

WHY: Entitlement checks run on every guarded request and must never call
the billing provider. Everything here reads only the local replica that
the reconciler maintains.

HOW:
- The authoritative subscription is the most recently updated non-CANCELED
  row. Its plan's limits apply while its status is ACTIVE, TRIALING or
  PAST_DUE; otherwise the free plan's limits apply.
- Limits come from the plan catalog by base plan name. A plan that has left
  the catalog falls back to the limits snapshotted on its row.
- The plan -> tier mapping is an explicit table. An unmapped plan is a
  configuration error, never an implicit FREE.

SECURITY:
- Limit checks use strict "<": usage equal to the limit is denied.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.config import settings
from entitlement_engine.core.exceptions import (
    ConfigurationError,
    UserNotFoundError,
    WorkspaceNotFoundError,
)
from entitlement_engine.dao.plan import PlanDAO
from entitlement_engine.dao.subscription import SubscriptionDAO
from entitlement_engine.dao.user import UserDAO
from entitlement_engine.dao.workspace import WorkspaceDAO
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.plan import Plan
from entitlement_engine.models.subscription import (
    ACTIVE_DISPLAY_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from entitlement_engine.models.user import User
from entitlement_engine.models.workspace import WorkspaceTier
from entitlement_engine.services.plan_catalog import (
    Feature,
    FeatureLimits,
    PlanCatalog,
    get_plan_catalog,
    split_plan_name,
)
from entitlement_engine.services.usage_service import UsageService, UsageSnapshot


logger = logging.getLogger(__name__)


FREE_PLAN_NAME = "free"

# Plan name -> workspace tier. Every plan that can become ACTIVE must be listed.
PLAN_TIERS: Dict[str, WorkspaceTier] = {
    "free": WorkspaceTier.FREE,
    "pro": WorkspaceTier.PRO,
    "pro_annual": WorkspaceTier.PRO,
}

# Statuses that reset owned workspaces to FREE (first payment never completed)
DOWNGRADE_STATUSES = frozenset(
    {
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    }
)

# Statuses that keep a workspace unlocked regardless of the app-level trial
UNLOCKING_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
    }
)


# ============================================================================
# Result types
# ============================================================================


class LockReason(str, Enum):
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


@dataclass(frozen=True)
class LimitCheckResult:
    """Outcome of checking one feature's usage against its limit."""

    allowed: bool
    limit: int  # -1 = unlimited
    usage: float
    message: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionStatusSummary:
    """Subscription and trial state as shown to billing UIs."""

    has_active_subscription: bool
    has_valid_trial: bool
    trial_expired: bool
    subscription: Optional[Subscription]
    trial_end_date: Optional[datetime]


@dataclass(frozen=True)
class WorkspaceAccessStatus:
    """Whether a workspace is locked because of its owner's billing state."""

    workspace_id: int
    owner_id: int
    is_locked: bool
    reason: Optional[LockReason] = None


@dataclass(frozen=True)
class WorkspaceEntitlements:
    """A workspace's tier, the owner's limits, and the workspace's usage."""

    workspace_id: int
    tier: WorkspaceTier
    plan_name: str
    limits: FeatureLimits
    usage: UsageSnapshot

    @property
    def can_upgrade(self) -> bool:
        return self.tier == WorkspaceTier.FREE


# ============================================================================
# Tier table
# ============================================================================


def tier_for_plan(plan_name: str) -> WorkspaceTier:
    """
    Look up the workspace tier for a plan name.

    Raises:
        ConfigurationError: If the plan is not in PLAN_TIERS
    """
    try:
        return PLAN_TIERS[plan_name]
    except KeyError:
        logger.error(f"No workspace tier mapped for plan {plan_name!r}")
        raise ConfigurationError(
            f"No workspace tier configured for plan '{plan_name}'",
            plan=plan_name,
        )


async def apply_tier_for_status(
    session: AsyncSession,
    user_id: int,
    status: SubscriptionStatus,
    plan_name: str,
) -> Optional[WorkspaceTier]:
    """
    Apply the tier implied by a subscription status to a user's workspaces.

    WHAT:
    - ACTIVE: tier from PLAN_TIERS
    - INCOMPLETE / INCOMPLETE_EXPIRED: FREE
    - anything else: tier left untouched (returns None)

    WHY: PAST_DUE, UNPAID and CANCELED do not downgrade here. Payment grace
    and post-cancellation access are decided by the workspace access check,
    which reads the live status, so a flapping payment never churns tiers.

    Args:
        session: Session of the caller's transaction
        user_id: Workspace owner
        status: Subscription status just persisted
        plan_name: Plan name of the subscription

    Returns:
        The tier applied, or None when no change was made
    """
    if status == SubscriptionStatus.ACTIVE:
        tier = tier_for_plan(plan_name)
    elif status in DOWNGRADE_STATUSES:
        tier = WorkspaceTier.FREE
    else:
        return None

    updated = await WorkspaceDAO(session).set_tier_for_owner(user_id, tier)
    logger.info(
        f"Applied tier {tier.value} to {updated} workspaces of user {user_id}",
        extra={"user_id": user_id, "tier": tier.value, "status": status.value},
    )
    return tier


# ============================================================================
# Service
# ============================================================================


class EntitlementService:
    """
    Read-side entitlement queries over the local subscription replica.

    Example:
        service = EntitlementService(db)
        result = await service.check_feature_limit(user_id, Feature.WORKSPACES, 1)
        if not result.allowed:
            raise ...
    """

    def __init__(self, db: AsyncSession, catalog: Optional[PlanCatalog] = None):
        self.db = db
        self.catalog = catalog or get_plan_catalog()
        self.user_dao = UserDAO(db)
        self.plan_dao = PlanDAO(db)
        self.subscription_dao = SubscriptionDAO(db)
        self.workspace_dao = WorkspaceDAO(db)

    async def get_authoritative_subscription(self, user_id: int) -> Optional[Subscription]:
        """Get the subscription row governing the user's entitlements."""
        return await self.subscription_dao.get_authoritative_for_user(user_id)

    async def resolve_plan(self, user_id: int) -> Tuple[str, FeatureLimits]:
        """
        Resolve the plan whose limits currently apply to a user.

        Returns:
            (plan name, limits); ("free", free limits) when no entitling
            subscription exists
        """
        subscription = await self.get_authoritative_subscription(user_id)
        if subscription is not None and subscription.is_entitling:
            plan = await self.plan_dao.get_by_id(subscription.plan_id)
            if plan is not None:
                return plan.name, self._limits_for_plan(plan)
            logger.warning(
                f"Subscription {subscription.id} references missing plan {subscription.plan_id}",
                extra={"subscription_id": subscription.id, "plan_id": subscription.plan_id},
            )

        return FREE_PLAN_NAME, self.catalog.limits_for(FREE_PLAN_NAME)

    async def get_effective_limits(self, user_id: int) -> FeatureLimits:
        """
        Effective feature limits of a user.

        Args:
            user_id: User ID

        Returns:
            FeatureLimits of the authoritative entitling plan, else free limits
        """
        _, limits = await self.resolve_plan(user_id)
        return limits

    async def check_feature_limit(
        self,
        user_id: int,
        feature: Feature,
        current_usage: float,
    ) -> LimitCheckResult:
        """
        Check whether a user may add one more unit of a feature.

        WHAT: allowed = unlimited or current_usage < max.

        Args:
            user_id: User whose plan applies
            feature: Feature being consumed
            current_usage: Units already consumed (per the feature's scope)

        Returns:
            LimitCheckResult; limit is -1 for unlimited features
        """
        plan_name, limits = await self.resolve_plan(user_id)
        limit = limits.get(feature)

        if limit.unlimited:
            return LimitCheckResult(allowed=True, limit=-1, usage=current_usage)

        allowed = limit.allows(current_usage)
        message = None
        if not allowed:
            if plan_name == FREE_PLAN_NAME:
                message = f"Free tier limit reached ({limit.max})"
            else:
                message = f"Plan limit reached ({limit.max})"

        return LimitCheckResult(
            allowed=allowed,
            limit=limit.max,
            usage=current_usage,
            message=message,
        )

    async def get_subscription_status(self, user_id: int) -> SubscriptionStatusSummary:
        """
        Summarize subscription and trial state for a user.

        WHY: UNPAID counts as "has an active subscription" here because the
        UI should show billing recovery, not an upgrade prompt.

        Raises:
            UserNotFoundError: If the user doesn't exist
        """
        user = await self._get_user(user_id)
        subscription = await self.get_authoritative_subscription(user_id)

        has_active = subscription is not None and subscription.status in ACTIVE_DISPLAY_STATUSES
        now = utc_now()
        has_valid_trial = user.trial_end_date is not None and now <= user.trial_end_date

        return SubscriptionStatusSummary(
            has_active_subscription=has_active,
            has_valid_trial=has_valid_trial,
            trial_expired=await self.is_trial_expired(user_id),
            subscription=subscription,
            trial_end_date=user.trial_end_date,
        )

    async def initialize_trial(self, user_id: int) -> User:
        """
        Start the app-level trial for a user.

        WHAT: trial_start = now, trial_end = now + TRIAL_DAYS.

        WHY: Calling this twice must not extend the trial, so a user whose
        trial was ever started is returned unchanged.

        Raises:
            UserNotFoundError: If the user doesn't exist
        """
        user = await self._get_user(user_id)
        if user.trial_start_date is not None:
            logger.info(
                f"Trial already initialized for user {user_id}",
                extra={"user_id": user_id},
            )
            return user

        now = utc_now()
        user.trial_start_date = now
        user.trial_end_date = now + timedelta(days=settings.TRIAL_DAYS)
        await self.db.flush()

        logger.info(
            f"Initialized {settings.TRIAL_DAYS}-day trial for user {user_id}",
            extra={"user_id": user_id, "trial_end_date": user.trial_end_date.isoformat()},
        )
        return user

    async def is_trial_expired(self, user_id: int) -> bool:
        """
        Check whether a user's app-level trial has run out.

        WHAT: False for an unknown user, a user with an ACTIVE subscription,
        a user who has ever subscribed, or a user with no trial. Otherwise
        True once now is past trial_end_date.

        WHY: Someone who paid and then lapsed is not a "trial expired" user;
        their workspaces lock for payment reasons instead.
        """
        user = await self.user_dao.get_by_id(user_id)
        if user is None:
            return False
        if await self.subscription_dao.has_status(user_id, SubscriptionStatus.ACTIVE):
            return False
        if await self.subscription_dao.has_any_for_user(user_id):
            return False
        if user.trial_end_date is None:
            return False
        return utc_now() > user.trial_end_date

    async def check_workspace_access(self, workspace_id: int) -> WorkspaceAccessStatus:
        """
        Decide whether a workspace is locked by its owner's billing state.

        WHAT:
        - Unlocked if the owner has an ACTIVE or TRIALING subscription
        - Unlocked if the owner's app-level trial has not ended
        - Otherwise locked, with reason:
          trial_expired if the owner never subscribed and the trial ran out,
          payment_failed if the owner's latest subscription is PAST_DUE or
          UNPAID, else subscription_inactive

        WHY: This is where PAST_DUE / UNPAID lose access. The reconciler
        leaves the tier alone for those statuses, so the lock is the single
        place that enforces non-payment.

        Raises:
            WorkspaceNotFoundError: If the workspace doesn't exist
        """
        workspace = await self.workspace_dao.get_by_id(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id=workspace_id)

        owner_id = workspace.owner_id
        owner = await self.user_dao.get_by_id(owner_id)
        if owner is None:
            return WorkspaceAccessStatus(
                workspace_id=workspace_id,
                owner_id=owner_id,
                is_locked=True,
                reason=LockReason.SUBSCRIPTION_INACTIVE,
            )

        latest = await self.subscription_dao.get_authoritative_for_user(owner_id)
        if latest is not None and latest.status in UNLOCKING_STATUSES:
            return WorkspaceAccessStatus(workspace_id=workspace_id, owner_id=owner_id, is_locked=False)
        if owner.trial_end_date is not None and utc_now() <= owner.trial_end_date:
            return WorkspaceAccessStatus(workspace_id=workspace_id, owner_id=owner_id, is_locked=False)

        if await self.is_trial_expired(owner_id):
            reason = LockReason.TRIAL_EXPIRED
        elif latest is not None and latest.status in (
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.UNPAID,
        ):
            reason = LockReason.PAYMENT_FAILED
        else:
            reason = LockReason.SUBSCRIPTION_INACTIVE

        logger.info(
            f"Workspace {workspace_id} locked: {reason.value}",
            extra={"workspace_id": workspace_id, "owner_id": owner_id, "reason": reason.value},
        )
        return WorkspaceAccessStatus(
            workspace_id=workspace_id,
            owner_id=owner_id,
            is_locked=True,
            reason=reason,
        )

    async def get_workspace_entitlements(self, workspace_id: int) -> WorkspaceEntitlements:
        """
        Tier, owner limits and current usage of one workspace.

        Raises:
            WorkspaceNotFoundError: If the workspace doesn't exist
        """
        workspace = await self.workspace_dao.get_by_id(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id=workspace_id)

        plan_name, limits = await self.resolve_plan(workspace.owner_id)
        usage = await UsageService(self.db).calculate_workspace_usage(workspace_id)
        return WorkspaceEntitlements(
            workspace_id=workspace_id,
            tier=workspace.subscription_tier,
            plan_name=plan_name,
            limits=limits,
            usage=usage,
        )

    def _limits_for_plan(self, plan: Plan) -> FeatureLimits:
        base_name, _ = split_plan_name(plan.name)
        if self.catalog.has_plan(plan.name):
            return self.catalog.limits_for(base_name)
        logger.warning(
            f"Plan {plan.name} is no longer in the catalog; using stored limits",
            extra={"plan_id": plan.id},
        )
        return FeatureLimits.from_dict(plan.feature_limits or {})

    async def _get_user(self, user_id: int) -> User:
        user = await self.user_dao.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id=user_id)
        return user
