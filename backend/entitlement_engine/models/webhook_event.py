"""
Webhook delivery ledger.

WHY: The provider delivers webhooks at least once. Recording each event id
lets a redelivery of an already-processed event be acknowledged without
work. Reconciliation is idempotent anyway; the ledger saves provider calls
and gives operators a trail of what arrived and what failed.
"""

from sqlalchemy import Column, String, DateTime, Text

from entitlement_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin


class ProviderWebhookEvent(Base, PrimaryKeyMixin, TimestampMixin):
    """One received provider webhook event."""

    __tablename__ = "provider_webhook_events"

    provider_event_id = Column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
        doc="Stripe event ID (evt_xxx)",
    )
    event_type = Column(String(100), nullable=False, index=True)

    # NULL until processing succeeds; failed events keep the error text
    processed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProviderWebhookEvent(id={self.provider_event_id}, type={self.event_type})>"
