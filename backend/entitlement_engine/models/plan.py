"""
Plan model for persisted billing plans.

WHY: Subscriptions reference plans by foreign key, but plan definitions live
in configuration (plans.json + limit env vars). A plan row is materialized
the first time a subscription references it and is append-only afterwards:
its id must stay stable even if the catalog's prices or limits change.

ARCHITECTURE:
- One row per (base plan, billing interval); "pro" and "pro_annual" are
  separate rows
- name is unique and is the conflict target for concurrent materialization
- feature_limits is a snapshot of limits at creation time, used only when
  the plan has since been removed from the catalog
"""

import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Enum,
    Boolean,
    Float,
    Numeric,
    JSON,
)

from entitlement_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin


class BillingInterval(str, enum.Enum):
    """
    Billing interval of a plan.

    WHY: The interval is part of a plan's identity; it derives from the
    "_annual" suffix of the plan name.
    """

    MONTHLY = "monthly"
    YEARLY = "yearly"


class Plan(Base, PrimaryKeyMixin, TimestampMixin):
    """Persisted plan row materialized from the plan catalog."""

    __tablename__ = "plans"

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        doc="Plan slug, e.g. 'pro' or 'pro_annual'",
    )
    display_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    price = Column(
        Numeric(10, 2),
        nullable=False,
        default=0,
        doc="Price per billing interval in major currency units",
    )
    currency = Column(String(3), nullable=False, default="usd")
    billing_interval = Column(
        Enum(BillingInterval),
        nullable=False,
        default=BillingInterval.MONTHLY,
    )

    feature_limits = Column(
        JSON,
        nullable=False,
        default=dict,
        doc="Per-feature {max, unlimited} at materialization time",
    )

    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Float, nullable=False, default=0)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Plan(id={self.id}, name={self.name}, interval={self.billing_interval.value})>"
