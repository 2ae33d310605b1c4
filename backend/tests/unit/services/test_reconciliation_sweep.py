"""
Unit tests for ReconciliationSweep.

WHY: Verifies that one customer's failure never stops the sweep and that
transient provider failures are flagged for the next run.
"""

import pytest

from entitlement_engine.core.exceptions import StripeError, TransientProviderError
from entitlement_engine.services.reconciliation_sweep import ReconciliationSweep
from tests.factories import UserFactory, make_stripe_subscription


class TestReconciliationSweep:
    """Tests for the sweep run."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, session_factory, db_session, mock_gateway):
        """Test that failing customers are reported while the rest reconcile."""
        await UserFactory.create(db_session, provider_customer_id="cus_ok")
        flaky = await UserFactory.create(db_session, provider_customer_id="cus_flaky")
        broken = await UserFactory.create(db_session, provider_customer_id="cus_broken")
        await UserFactory.create(db_session)  # never checked out

        async def list_subscriptions(customer_id, limit=10):
            if customer_id == "cus_flaky":
                raise TransientProviderError("Stripe subscription list failed")
            if customer_id == "cus_broken":
                raise StripeError("Stripe subscription list failed")
            return [make_stripe_subscription(customer_id=customer_id)]

        mock_gateway.list_customer_subscriptions.side_effect = list_subscriptions

        report = await ReconciliationSweep(session_factory, gateway=mock_gateway, concurrency=1).run()

        assert report.checked == 3
        assert report.reconciled == 1
        errors = {error.customer_id: error for error in report.errors}
        assert errors["cus_flaky"].retryable is True
        assert errors["cus_flaky"].user_id == flaky.id
        assert errors["cus_broken"].retryable is False
        assert errors["cus_broken"].user_id == broken.id
        assert "cus_ok" not in errors

    @pytest.mark.asyncio
    async def test_counts_canceled(self, session_factory, db_session, mock_gateway):
        """Test that rows missing at Stripe are counted as canceled."""
        await UserFactory.create(db_session, provider_customer_id="cus_gone")
        mock_gateway.list_customer_subscriptions.return_value = [
            make_stripe_subscription(customer_id="cus_gone")
        ]
        sweep = ReconciliationSweep(session_factory, gateway=mock_gateway, concurrency=1)
        await sweep.run()

        mock_gateway.list_customer_subscriptions.return_value = []
        report = await sweep.run()

        assert report.checked == 1
        assert report.canceled == 1
        assert report.to_dict() == {
            "checked": 1,
            "reconciled": 0,
            "canceled": 1,
            "errors": [],
        }

    @pytest.mark.asyncio
    async def test_no_customers(self, session_factory, mock_gateway):
        """Test that an empty database sweeps nothing."""
        report = await ReconciliationSweep(session_factory, gateway=mock_gateway).run()

        assert report.checked == 0
        mock_gateway.list_customer_subscriptions.assert_not_called()
