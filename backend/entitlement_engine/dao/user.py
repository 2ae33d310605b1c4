"""
User Data Access Object (DAO).

WHY: Billing only needs a handful of user queries: resolving a provider
customer to a user, and listing every user the sweep must check.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.dao.base import BaseDAO
from entitlement_engine.models.user import User


class UserDAO(BaseDAO[User]):
    """Data Access Object for User model."""

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)

    async def get_by_provider_customer_id(self, provider_customer_id: str) -> Optional[User]:
        """
        Get the user linked to a provider customer.

        WHY: Subscription snapshots carry only the customer id, so this is
        the only way to attribute a snapshot to a user.
        """
        return await self.get_by_field("provider_customer_id", provider_customer_id)

    async def list_billable_customers(self) -> List[User]:
        """
        Get every user that is linked to a provider customer.

        WHY: The reconciliation sweep walks provider customers, and users
        who never reached checkout have nothing to reconcile.
        """
        result = await self.session.execute(
            select(User)
            .where(User.provider_customer_id.is_not(None))
            .order_by(User.id)
        )
        return list(result.scalars().all())
