"""
Plan materialization.

WHAT: Idempotent get-or-create of a persisted plan row from the catalog.

WHY: Plans exist in config long before anyone subscribes to them, and
subscription rows need a plan foreign key. Creating the row on first
reference avoids a seeding step, but several triggers can reference a new
plan at the same moment.

HOW:
1. Look the row up by name and interval
2. If absent, INSERT ... ON CONFLICT (name) DO NOTHING
3. Re-read by name; whichever insert won, every caller sees the same id
Existing rows are never overwritten, so their ids stay stable after the
catalog changes.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.exceptions import ConfigurationError
from entitlement_engine.dao.plan import PlanDAO
from entitlement_engine.models.plan import Plan
from entitlement_engine.services.plan_catalog import (
    PlanCatalog,
    get_plan_catalog,
    split_plan_name,
)


logger = logging.getLogger(__name__)


class PlanMaterializer:
    """
    Creates plan rows on first reference.

    Example:
        materializer = PlanMaterializer(session)
        plan_id = await materializer.ensure_plan_exists("pro_annual")
    """

    def __init__(self, db: AsyncSession, catalog: Optional[PlanCatalog] = None):
        self.db = db
        self.plan_dao = PlanDAO(db)
        self.catalog = catalog or get_plan_catalog()

    async def ensure_plan_exists(self, plan_name: str) -> int:
        """
        Return the id of the plan row for a plan name, creating it if needed.

        Args:
            plan_name: Plan slug, e.g. "pro" or "pro_annual"

        Returns:
            Persisted plan id

        Raises:
            PlanNotFoundError: If the plan is absent from the catalog
            ConfigurationError: If the plan's limits are not configured
        """
        plan = await self.get_or_create(plan_name)
        return plan.id

    async def get_or_create(self, plan_name: str) -> Plan:
        """Same as ensure_plan_exists but returns the row."""
        _, interval = split_plan_name(plan_name)

        existing = await self.plan_dao.get_by_name_and_interval(plan_name, interval)
        if existing is not None:
            return existing

        definition = self.catalog.plan_definition(plan_name)

        await self.plan_dao.insert_if_absent(
            name=definition.name,
            display_name=definition.display_name,
            description=definition.description,
            price=definition.price,
            currency=definition.currency,
            billing_interval=definition.billing_interval,
            feature_limits=definition.feature_limits.to_dict(),
            is_active=definition.is_active,
            sort_order=definition.sort_order,
        )

        plan = await self.plan_dao.get_by_name(plan_name)
        if plan is None:
            raise ConfigurationError(
                f"Plan '{plan_name}' could not be materialized",
                plan=plan_name,
            )
        if plan.billing_interval != interval:
            raise ConfigurationError(
                f"Plan row '{plan_name}' has interval {plan.billing_interval.value}, "
                f"expected {interval.value}",
                plan=plan_name,
            )

        logger.info(
            f"Materialized plan {plan_name}",
            extra={"plan_id": plan.id, "plan_name": plan_name},
        )
        return plan
