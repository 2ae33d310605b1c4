"""
Plan Data Access Object (DAO).

WHAT: DAO for persisted plan rows.

WHY: Plan rows are created lazily and concurrently by whichever trigger sees
a plan first. The insert must be a no-op when another caller already won,
which needs dialect-specific INSERT ... ON CONFLICT DO NOTHING.

HOW: Extends BaseDAO with name lookups and a conflict-tolerant insert that
picks the PostgreSQL or SQLite insert construct from the bound dialect.
"""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.dao.base import BaseDAO
from entitlement_engine.models.plan import Plan, BillingInterval


class PlanDAO(BaseDAO[Plan]):
    """Data Access Object for Plan model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Plan, session)

    async def get_by_name(self, name: str) -> Optional[Plan]:
        """Get a plan row by its unique slug."""
        return await self.get_by_field("name", name)

    async def get_by_name_and_interval(
        self, name: str, billing_interval: BillingInterval
    ) -> Optional[Plan]:
        """
        Get a plan row by slug and billing interval.

        WHY: The interval is implied by the slug today, but matching on both
        guards against a hand-edited row whose interval disagrees with its
        name being picked up for the wrong cadence.
        """
        result = await self.session.execute(
            select(Plan).where(
                Plan.name == name,
                Plan.billing_interval == billing_interval,
            )
        )
        return result.scalar_one_or_none()

    async def insert_if_absent(self, **values: Any) -> None:
        """
        Insert a plan row unless one with the same name exists.

        WHAT: INSERT ... ON CONFLICT (name) DO NOTHING.

        WHY: Two triggers materializing the same plan at once must never both
        win, and the loser must not fail. Callers re-read by name afterwards.

        HOW: Chooses the dialect-specific insert construct, since the generic
        insert has no conflict clause.
        """
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(Plan)
        elif dialect == "sqlite":
            stmt = sqlite.insert(Plan)
        else:
            raise NotImplementedError(f"Plan upsert not supported on dialect '{dialect}'")

        stmt = stmt.values(**values).on_conflict_do_nothing(index_elements=["name"])
        await self.session.execute(stmt)
