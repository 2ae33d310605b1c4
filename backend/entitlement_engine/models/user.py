"""
User model.

WHY: Users own workspaces and subscriptions. Authentication is handled
elsewhere; this model carries only what billing needs: the link to the
provider customer and the app-level trial window.
"""

from sqlalchemy import Column, String, DateTime

from entitlement_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin


class User(Base, PrimaryKeyMixin, TimestampMixin):
    """Account that owns workspaces and subscriptions."""

    __tablename__ = "users"

    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)

    # WHY: Webhooks identify the payer only by customer id, so this is how
    # a provider snapshot is attributed to a user
    provider_customer_id = Column(
        String(255),
        unique=True,
        index=True,
        nullable=True,
        doc="Stripe customer ID (cus_xxx)",
    )

    # App-level trial, independent of any provider-side trial
    trial_start_date = Column(DateTime, nullable=True)
    trial_end_date = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email})>"
