"""
Webhook event ledger DAO.

WHY: Keeps the bookkeeping of received provider events out of the webhook
handler so the handler reads as dispatch logic only.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.dao.base import BaseDAO
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.webhook_event import ProviderWebhookEvent


class ProviderWebhookEventDAO(BaseDAO[ProviderWebhookEvent]):
    """Data Access Object for ProviderWebhookEvent model."""

    def __init__(self, session: AsyncSession):
        super().__init__(ProviderWebhookEvent, session)

    async def get_by_event_id(self, provider_event_id: str) -> Optional[ProviderWebhookEvent]:
        """Get a ledger entry by provider event id."""
        return await self.get_by_field("provider_event_id", provider_event_id)

    async def get_or_create(self, provider_event_id: str, event_type: str) -> ProviderWebhookEvent:
        """Return the ledger entry for an event, recording it on first delivery."""
        event = await self.get_by_event_id(provider_event_id)
        if event is None:
            event = await self.create(
                provider_event_id=provider_event_id,
                event_type=event_type,
            )
        return event

    async def mark_processed(self, event: ProviderWebhookEvent) -> None:
        """Stamp an event as successfully processed."""
        event.processed_at = utc_now()
        event.last_error = None
        await self.session.flush()

    async def mark_failed(self, event: ProviderWebhookEvent, error: str) -> None:
        """Record the last processing error; the event stays unprocessed."""
        event.last_error = error[:2000]
        await self.session.flush()
