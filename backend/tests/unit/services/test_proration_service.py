"""
Unit tests for ProrationService.

WHY: Verifies that:
1. Plan changes follow the allow-list with user-facing messages
2. Yearly -> monthly waits for the end of the paid period
3. Previews read proration lines from either payload shape
4. Any provider failure yields no preview instead of an error
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from entitlement_engine.core.config import settings
from entitlement_engine.core.exceptions import TransientProviderError
from entitlement_engine.models.base import utc_now
from entitlement_engine.services.plan_materializer import PlanMaterializer
from entitlement_engine.services.proration_service import ProrationService
from tests.factories import (
    TEST_PRICE_PRO_YEARLY,
    SubscriptionFactory,
    UserFactory,
    make_stripe_subscription,
)


@pytest.fixture
def service(db_session, mock_gateway):
    return ProrationService(db_session, gateway=mock_gateway)


class TestValidatePlanChange:
    """Tests for the plan change allow-list."""

    def test_first_subscription(self, service):
        """Test that subscribing from nothing only checks the target."""
        assert service.validate_plan_change(None, "pro").valid is True

    def test_same_plan(self, service):
        """Test that switching to the current plan is rejected."""
        result = service.validate_plan_change("pro", "pro")

        assert result.valid is False
        assert result.message == "Cannot change to the same plan"

    def test_unknown_target(self, service):
        """Test that a target outside the catalog is rejected."""
        result = service.validate_plan_change("pro", "enterprise")

        assert result.valid is False
        assert result.message == "Plan not found in config: enterprise"

    def test_target_without_price(self, service, monkeypatch):
        """Test that a paid target without a price id is rejected."""
        monkeypatch.setattr(settings, "STRIPE_PRICE_PRO_YEARLY", "")

        result = service.validate_plan_change("pro", "pro_annual")

        assert result.valid is False
        assert result.message == "Target plan is not configured with Stripe"

    def test_upgrade_and_downgrade_allowed(self, service):
        """Test that listed transitions are allowed."""
        assert service.validate_plan_change("free", "pro").valid is True
        assert service.validate_plan_change("pro", "pro_annual").valid is True
        assert service.validate_plan_change("pro_annual", "free").valid is True

    def test_unlisted_transition(self, service):
        """Test that a transition missing from the allow-list is rejected."""
        result = service.validate_plan_change("legacy", "pro")

        assert result.valid is False
        assert result.message == "Changing from legacy to pro is not supported"

    def test_yearly_to_monthly_before_period_end(self, service):
        """Test that yearly -> monthly is refused while the year is running."""
        period_end = utc_now() + timedelta(days=100)

        result = service.validate_plan_change("pro_annual", "pro", period_end)

        assert result.valid is False
        assert period_end.date().isoformat() in result.message

    def test_yearly_to_monthly_after_period_end(self, service):
        """Test that yearly -> monthly is allowed once the year is over."""
        result = service.validate_plan_change("pro_annual", "pro", utc_now() - timedelta(days=1))

        assert result.valid is True

    @pytest.mark.asyncio
    async def test_validate_for_user(self, service, db_session):
        """Test that the user's authoritative plan is the starting point."""
        user = await UserFactory.create(db_session, provider_customer_id="cus_pr_1")
        plan = await PlanMaterializer(db_session).get_or_create("pro")
        await db_session.commit()
        await SubscriptionFactory.create(db_session, user=user, plan=plan)

        same = await service.validate_plan_change_for_user(user.id, "pro")
        upgrade = await service.validate_plan_change_for_user(user.id, "pro_annual")

        assert same.valid is False
        assert upgrade.valid is True


class TestPreviewProration:
    """Tests for proration previews."""

    @pytest.mark.asyncio
    async def test_preview_from_proration_lines(self, service, mock_gateway):
        """Test that charges and credits are split from proration lines."""
        mock_gateway.retrieve_subscription.return_value = make_stripe_subscription()
        mock_gateway.preview_invoice.return_value = {
            "currency": "usd",
            "amount_due": 37050,
            "lines": {
                "data": [
                    {"amount": -950, "proration": True},
                    {"amount": 19000, "proration": True},
                    {"amount": 19000, "proration": False},
                ]
            },
        }

        preview = await service.preview_proration("sub_test_1", "pro_annual")

        assert preview.immediate_charge == Decimal("180.50")
        assert preview.credit == Decimal("9.50")
        assert preview.next_invoice_total == Decimal("190")
        assert preview.currency == "USD"
        assert preview.period_end == datetime(2026, 1, 31)

        kwargs = mock_gateway.preview_invoice.call_args.kwargs
        assert kwargs["customer_id"] == "cus_test_1"
        assert kwargs["items"] == [{"id": "si_sub_test_1", "price": TEST_PRICE_PRO_YEARLY}]

    @pytest.mark.asyncio
    async def test_preview_nested_proration_flag(self, service, mock_gateway):
        """Test that newer payloads flag prorations under parent details."""
        mock_gateway.retrieve_subscription.return_value = make_stripe_subscription(
            period_on_items=True
        )
        mock_gateway.preview_invoice.return_value = {
            "currency": "usd",
            "lines": {
                "data": [
                    {
                        "amount": 500,
                        "parent": {"subscription_item_details": {"proration": True}},
                    },
                ]
            },
        }

        preview = await service.preview_proration("sub_test_1", "pro_annual")

        assert preview.immediate_charge == Decimal("5.00")
        assert preview.credit == Decimal("0.00")
        assert preview.period_end == datetime(2026, 1, 31)

    @pytest.mark.asyncio
    async def test_preview_without_proration_lines(self, service, mock_gateway):
        """Test that amount_due is used when there are no proration lines."""
        mock_gateway.retrieve_subscription.return_value = make_stripe_subscription()
        mock_gateway.preview_invoice.return_value = {
            "currency": "eur",
            "amount_due": 1234,
            "lines": {"data": []},
        }

        preview = await service.preview_proration("sub_test_1", "pro_annual")

        assert preview.immediate_charge == Decimal("12.34")
        assert preview.currency == "EUR"

    @pytest.mark.asyncio
    async def test_preview_provider_failure(self, service, mock_gateway):
        """Test that a provider error yields None."""
        mock_gateway.retrieve_subscription.side_effect = TransientProviderError("Stripe down")

        assert await service.preview_proration("sub_test_1", "pro_annual") is None

    @pytest.mark.asyncio
    async def test_preview_free_target(self, service, mock_gateway):
        """Test that a target without a price id yields None without calling Stripe."""
        assert await service.preview_proration("sub_test_1", "free") is None
        mock_gateway.retrieve_subscription.assert_not_called()
