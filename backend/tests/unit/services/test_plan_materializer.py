"""
Unit tests for PlanMaterializer.

WHY: Verifies that:
1. A plan row is created on first reference with catalog values
2. Repeated calls return the same row, including when another writer
   inserts the row between the lookup and the insert
3. Annual variants get yearly pricing and interval
4. Unknown plans and mismatched rows fail instead of guessing
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from entitlement_engine.core.exceptions import ConfigurationError, PlanNotFoundError
from entitlement_engine.models.plan import BillingInterval, Plan
from entitlement_engine.services.plan_materializer import PlanMaterializer
from tests.factories import PlanFactory


class TestPlanMaterializer:
    """Tests for lazy plan materialization."""

    @pytest.mark.asyncio
    async def test_creates_plan_on_first_reference(self, db_session):
        """Test that a missing plan row is created from the catalog."""
        plan = await PlanMaterializer(db_session).get_or_create("pro")
        await db_session.commit()

        assert plan.id is not None
        assert plan.name == "pro"
        assert plan.display_name == "Pro"
        assert plan.price == Decimal("19.00")
        assert plan.billing_interval == BillingInterval.MONTHLY
        assert plan.feature_limits["workspaces"] == {"max": 5, "unlimited": False}

    @pytest.mark.asyncio
    async def test_is_idempotent(self, db_session):
        """Test that materializing twice yields one row and one id."""
        materializer = PlanMaterializer(db_session)
        first = await materializer.ensure_plan_exists("pro")
        second = await materializer.ensure_plan_exists("pro")
        await db_session.commit()

        count = await db_session.scalar(select(func.count(Plan.id)).where(Plan.name == "pro"))
        assert first == second
        assert count == 1

    @pytest.mark.asyncio
    async def test_annual_variant(self, db_session):
        """Test that the annual variant is materialized with yearly values."""
        plan = await PlanMaterializer(db_session).get_or_create("pro_annual")

        assert plan.billing_interval == BillingInterval.YEARLY
        assert plan.price == Decimal("190.00")
        assert plan.display_name == "Pro Annual"
        assert plan.sort_order == 1.5

    @pytest.mark.asyncio
    async def test_reuses_existing_row(self, db_session):
        """Test that an existing row is returned untouched."""
        existing = await PlanFactory.create(db_session, name="pro", display_name="Legacy Pro")

        plan_id = await PlanMaterializer(db_session).ensure_plan_exists("pro")

        assert plan_id == existing.id

    @pytest.mark.asyncio
    async def test_unknown_plan(self, db_session):
        """Test that a plan absent from the catalog is not created."""
        with pytest.raises(PlanNotFoundError):
            await PlanMaterializer(db_session).ensure_plan_exists("enterprise")

        count = await db_session.scalar(select(func.count(Plan.id)))
        assert count == 0

    @pytest.mark.asyncio
    async def test_interval_mismatch(self, db_session):
        """Test that a row whose interval contradicts its name is rejected."""
        await PlanFactory.create(
            db_session,
            name="pro_annual",
            billing_interval=BillingInterval.MONTHLY,
        )

        with pytest.raises(ConfigurationError):
            await PlanMaterializer(db_session).ensure_plan_exists("pro_annual")

    @pytest.mark.asyncio
    async def test_row_inserted_after_lookup(self, db_session):
        """Test that a row created between lookup and insert is reused."""
        existing = await PlanFactory.create(db_session, name="pro", display_name="Concurrent Pro")
        materializer = PlanMaterializer(db_session)

        with patch.object(
            materializer.plan_dao,
            "get_by_name_and_interval",
            AsyncMock(return_value=None),
        ):
            plan = await materializer.get_or_create("pro")
        await db_session.commit()

        count = await db_session.scalar(select(func.count(Plan.id)).where(Plan.name == "pro"))
        assert plan.id == existing.id
        assert plan.display_name == "Concurrent Pro"
        assert count == 1
