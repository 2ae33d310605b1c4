"""
Subscription Data Access Object (DAO).

WHAT: DAO for the local subscription replica.

WHY: Subscriptions are critical for:
1. Finding the row a provider snapshot belongs to
2. Keeping at most one non-CANCELED row per user
3. Picking the authoritative row for entitlement checks

HOW: Extends BaseDAO with provider-id lookups, the authoritative-row query,
and a bulk "cancel everything else" update used on the create path.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.dao.base import BaseDAO
from entitlement_engine.models.subscription import Subscription, SubscriptionStatus


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for Subscription model.

    WHAT: Handles all database operations for subscriptions.

    WHY: Centralizes the queries the reconciler and the entitlement
    calculator share, so both agree on what "authoritative" means.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    async def get_by_provider_subscription_id(
        self, provider_subscription_id: str
    ) -> Optional[Subscription]:
        """
        Get subscription by provider subscription ID.

        WHY: Every trigger identifies the subscription only by the
        provider's id. The unique constraint guarantees at most one row.

        Args:
            provider_subscription_id: Stripe subscription ID (sub_xxx)

        Returns:
            Subscription if found, None otherwise
        """
        return await self.get_by_field("provider_subscription_id", provider_subscription_id)

    async def get_authoritative_for_user(self, user_id: int) -> Optional[Subscription]:
        """
        Get the subscription governing a user's entitlements.

        WHAT: The most recently updated non-CANCELED row.

        WHY: The create path cancels older rows, so normally there is exactly
        one candidate. Ordering by updated_at (then id) keeps the answer
        deterministic if a racing trigger briefly leaves two.

        Args:
            user_id: User ID

        Returns:
            Subscription if the user has a non-CANCELED row, None otherwise
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status != SubscriptionStatus.CANCELED,
            )
            .order_by(Subscription.updated_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_status(self, user_id: int, status: SubscriptionStatus) -> bool:
        """Check whether the user has any subscription row in the given status."""
        return await self.exists(user_id=user_id, status=status)

    async def has_any_for_user(self, user_id: int) -> bool:
        """Check whether the user has ever had a subscription row."""
        return await self.exists(user_id=user_id)

    async def list_open_for_user(self, user_id: int) -> List[Subscription]:
        """Get every non-CANCELED row of a user."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status != SubscriptionStatus.CANCELED,
            )
            .order_by(Subscription.id)
        )
        return list(result.scalars().all())

    async def cancel_others_for_user(
        self,
        user_id: int,
        keep_provider_subscription_id: str,
        canceled_at: datetime,
    ) -> int:
        """
        Mark a user's other open subscriptions CANCELED.

        WHAT: Bulk update of every non-CANCELED row of the user whose provider
        id differs from the one being created.

        WHY: Enforces the single-authoritative-row invariant. Rows that are
        already CANCELED are left alone so their original canceled_at (the
        cancellation history) is preserved.

        Args:
            user_id: Owner of the subscriptions
            keep_provider_subscription_id: Provider id of the new subscription
            canceled_at: Timestamp to record on the superseded rows

        Returns:
            Number of rows canceled
        """
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.provider_subscription_id != keep_provider_subscription_id,
                Subscription.status != SubscriptionStatus.CANCELED,
            )
            .values(
                status=SubscriptionStatus.CANCELED,
                cancel_at_period_end=False,
                canceled_at=canceled_at,
                updated_at=canceled_at,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount
