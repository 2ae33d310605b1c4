"""
Subscription model mirroring the billing provider's subscription lifecycle.

WHY: The provider is the source of truth for billing, but entitlement checks
happen on every request and cannot call the provider. This table is the
local replica that the reconciler keeps converged.

ARCHITECTURE:
- One row per provider subscription (provider_subscription_id is unique and
  is the serialization point for racing triggers)
- A user may have many historical rows, but at most one non-CANCELED row
- Rows are never hard-deleted; cancellation is a status transition so that
  cancellation history (canceled_at) survives
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Enum,
    ForeignKey,
    DateTime,
    Boolean,
)

from entitlement_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription status values (mirrors Stripe statuses).

    Statuses:
    - TRIALING: Trial period on the provider side
    - ACTIVE: Payment successful, full access
    - PAST_DUE: Payment failed, grace period
    - CANCELED: Ended (or superseded by a newer subscription)
    - UNPAID: Multiple payment failures
    - INCOMPLETE: Initial payment pending
    - INCOMPLETE_EXPIRED: Initial payment never completed
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


# Statuses whose plan limits apply (PAST_DUE is the payment grace period)
ENTITLING_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
    }
)

# Statuses reported as "has an active subscription" to the billing UI
ACTIVE_DISPLAY_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    }
)


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Local replica of one provider subscription.

    LIFECYCLE:
    1. First observed by any trigger -> row created, older rows CANCELED
    2. Later snapshots overwrite status, plan and period fields
    3. Provider deletion -> status CANCELED, row kept
    """

    __tablename__ = "subscriptions"

    provider_subscription_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        doc="Stripe subscription ID (sub_xxx)",
    )
    provider_customer_id = Column(
        String(255),
        nullable=False,
        index=True,
        doc="Stripe customer ID (cus_xxx)",
    )

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Integer,
        ForeignKey("plans.id"),
        nullable=False,
        index=True,
    )

    status = Column(
        Enum(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.INCOMPLETE,
    )

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)

    # WHY: cancel_at_period_end flipping true -> false is how a reactivation
    # is detected, and canceled_at is only cleared on reactivation
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True)

    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"provider_subscription_id={self.provider_subscription_id}, "
            f"status={self.status.value})>"
        )

    @property
    def is_entitling(self) -> bool:
        """Check if this subscription's plan limits apply."""
        return self.status in ENTITLING_STATUSES
