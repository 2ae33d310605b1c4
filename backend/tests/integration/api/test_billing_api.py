"""
Integration tests for the billing API.

WHAT: Tests for the entitlement endpoints via HTTP.

WHY: These tests ensure:
1. Webhooks are signature-checked before any processing
2. Checkout verification and sync expose the reconciled subscription
3. Limit, status, trial and workspace endpoints read the local replica
4. Domain errors map to the documented status codes

HOW: Uses pytest-asyncio with AsyncClient; Stripe is replaced by the
mock gateway fixture.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.core.exceptions import WebhookSignatureError
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.subscription import SubscriptionStatus
from entitlement_engine.services.plan_materializer import PlanMaterializer
from tests.factories import (
    SubscriptionFactory,
    UserFactory,
    WorkspaceFactory,
    make_stripe_event,
    make_stripe_subscription,
)


CUSTOMER_ID = "cus_test_1"
SIGNATURE = {"Stripe-Signature": "t=1,v1=abc"}


class TestHealth:
    """Tests for service-level endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        """Test that health reports the scheduler without starting it."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["scheduler"]["running"] is False


class TestStripeWebhook:
    """Integration tests for the webhook endpoint."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient, mock_gateway):
        """Test that a webhook without a signature header is rejected."""
        response = await client.post("/api/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        assert response.json()["message"] == "Missing Stripe-Signature header"
        mock_gateway.construct_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client: AsyncClient, mock_gateway):
        """Test that a forged webhook is rejected."""
        mock_gateway.construct_event.side_effect = WebhookSignatureError()

        response = await client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNATURE)

        assert response.status_code == 400
        assert response.json()["error"] == "WebhookSignatureError"

    @pytest.mark.asyncio
    async def test_subscription_event(
        self, client: AsyncClient, db_session: AsyncSession, mock_gateway
    ):
        """Test that a verified subscription event is reconciled."""
        user = await UserFactory.create(db_session, provider_customer_id=CUSTOMER_ID)
        mock_gateway.construct_event.return_value = make_stripe_event(
            "customer.subscription.created", make_stripe_subscription()
        )

        response = await client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNATURE)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"

        status_response = await client.get(f"/api/billing/users/{user.id}/status")
        assert status_response.json()["subscription"]["provider_subscription_id"] == "sub_test_1"

    @pytest.mark.asyncio
    async def test_processing_failure_still_acknowledged(self, client: AsyncClient, mock_gateway):
        """Test that a processing failure answers 200 with status failed."""
        mock_gateway.construct_event.return_value = make_stripe_event(
            "customer.subscription.created", make_stripe_subscription(customer_id="cus_nobody")
        )

        response = await client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNATURE)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"


class TestTriggers:
    """Integration tests for checkout verification and sync."""

    @pytest.mark.asyncio
    async def test_verify_checkout(self, client: AsyncClient, db_session: AsyncSession, mock_gateway):
        """Test that a paid checkout returns the activated subscription."""
        user = await UserFactory.create(db_session)
        mock_gateway.retrieve_checkout_session.return_value = {
            "id": "cs_1",
            "customer": CUSTOMER_ID,
            "payment_status": "paid",
            "subscription": "sub_test_1",
        }
        mock_gateway.retrieve_subscription.return_value = make_stripe_subscription()

        response = await client.post(
            f"/api/billing/users/{user.id}/verify-checkout",
            json={"session_id": "cs_1"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["subscription_id"] == "sub_test_1"
        assert data["status"] == "active"

    @pytest.mark.asyncio
    async def test_verify_checkout_requires_session_id(self, client: AsyncClient):
        """Test that request validation errors answer 400."""
        response = await client.post("/api/billing/users/1/verify-checkout", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_sync(self, client: AsyncClient, db_session: AsyncSession, mock_gateway):
        """Test that sync reconciles the customer's active subscription."""
        user = await UserFactory.create(db_session, provider_customer_id=CUSTOMER_ID)
        mock_gateway.list_customer_subscriptions.return_value = [make_stripe_subscription()]

        response = await client.post(f"/api/billing/users/{user.id}/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "reconciled"
        assert data["subscription"]["status"] == "active"

    @pytest.mark.asyncio
    async def test_sync_unknown_user(self, client: AsyncClient):
        """Test that syncing a missing user answers 404."""
        response = await client.post("/api/billing/users/99999/sync")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_sweep(self, client: AsyncClient, db_session: AsyncSession, mock_gateway):
        """Test that the sweep endpoint returns the report."""
        await UserFactory.create(db_session, provider_customer_id=CUSTOMER_ID)
        mock_gateway.list_customer_subscriptions.return_value = [make_stripe_subscription()]

        response = await client.post("/api/billing/sweep")

        assert response.status_code == 200
        assert response.json()["checked"] == 1
        assert response.json()["reconciled"] == 1


class TestLimitsAndStatus:
    """Integration tests for limits, status and trial endpoints."""

    @pytest.mark.asyncio
    async def test_free_limits(self, client: AsyncClient, db_session: AsyncSession):
        """Test that a user without a subscription gets free limits."""
        user = await UserFactory.create(db_session)

        response = await client.get(f"/api/billing/users/{user.id}/limits")

        assert response.status_code == 200
        data = response.json()
        assert data["plan_name"] == "free"
        assert data["limits"]["workspaces"] == {"max": 1, "unlimited": False}

    @pytest.mark.asyncio
    async def test_check_limit(self, client: AsyncClient, db_session: AsyncSession):
        """Test that usage at the limit is denied."""
        user = await UserFactory.create(db_session)

        response = await client.get(
            f"/api/billing/users/{user.id}/limits/workspaces", params={"usage": 1}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["allowed"] is False
        assert data["message"] == "Free tier limit reached (1)"

    @pytest.mark.asyncio
    async def test_check_unknown_feature(self, client: AsyncClient, db_session: AsyncSession):
        """Test that an unknown feature is a validation error."""
        user = await UserFactory.create(db_session)

        response = await client.get(
            f"/api/billing/users/{user.id}/limits/teleport", params={"usage": 1}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_trial_does_not_extend(self, client: AsyncClient, db_session: AsyncSession):
        """Test that starting the trial twice keeps the first end date."""
        user = await UserFactory.create(db_session)

        first = await client.post(f"/api/billing/users/{user.id}/trial")
        second = await client.post(f"/api/billing/users/{user.id}/trial")

        assert first.status_code == 200
        assert second.json()["trial_end_date"] == first.json()["trial_end_date"]

        status_response = await client.get(f"/api/billing/users/{user.id}/status")
        assert status_response.json()["has_valid_trial"] is True

    @pytest.mark.asyncio
    async def test_status_unknown_user(self, client: AsyncClient):
        """Test that status for a missing user answers 404."""
        response = await client.get("/api/billing/users/99999/status")

        assert response.status_code == 404


class TestPlanChanges:
    """Integration tests for plan change validation and previews."""

    @pytest.mark.asyncio
    async def test_validate_same_plan(self, client: AsyncClient):
        """Test that switching to the current plan is invalid."""
        response = await client.get(
            "/api/billing/plan-change/validate",
            params={"current_plan": "pro", "new_plan": "pro"},
        )

        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["message"] == "Cannot change to the same plan"

    @pytest.mark.asyncio
    async def test_validate_for_user(self, client: AsyncClient, db_session: AsyncSession):
        """Test that validation can start from the user's subscription."""
        user = await UserFactory.create(db_session, provider_customer_id=CUSTOMER_ID)
        plan = await PlanMaterializer(db_session).get_or_create("pro")
        await db_session.commit()
        await SubscriptionFactory.create(db_session, user=user, plan=plan)

        response = await client.get(
            "/api/billing/plan-change/validate",
            params={"user_id": user.id, "new_plan": "pro_annual"},
        )

        assert response.json()["valid"] is True

    @pytest.mark.asyncio
    async def test_preview(self, client: AsyncClient, mock_gateway):
        """Test that a preview exposes the immediate charge."""
        mock_gateway.retrieve_subscription.return_value = make_stripe_subscription()
        mock_gateway.preview_invoice.return_value = {
            "currency": "usd",
            "lines": {"data": [{"amount": 17100, "proration": True}]},
        }

        response = await client.get(
            "/api/billing/subscriptions/sub_test_1/proration-preview",
            params={"new_plan": "pro_annual"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["available"] is True
        assert Decimal(str(data["immediate_charge"])) == Decimal("171.00")

    @pytest.mark.asyncio
    async def test_preview_unavailable(self, client: AsyncClient, mock_gateway):
        """Test that a failed preview answers 200 with available false."""
        mock_gateway.retrieve_subscription.side_effect = RuntimeError("boom")

        response = await client.get(
            "/api/billing/subscriptions/sub_test_1/proration-preview",
            params={"new_plan": "pro_annual"},
        )

        assert response.status_code == 200
        assert response.json()["available"] is False


class TestWorkspaces:
    """Integration tests for workspace usage and access."""

    @pytest.mark.asyncio
    async def test_usage(self, client: AsyncClient, db_session: AsyncSession):
        """Test that workspace usage includes tier and limits."""
        owner = await UserFactory.create(db_session)
        workspace = await WorkspaceFactory.create(db_session, owner=owner)

        response = await client.get(f"/api/billing/workspaces/{workspace.id}/usage")

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "free"
        assert data["can_upgrade"] is True
        assert data["usage"]["workspaces"] == 1

    @pytest.mark.asyncio
    async def test_access_locked_for_failed_payment(
        self, client: AsyncClient, db_session: AsyncSession
    ):
        """Test that a PAST_DUE owner's workspace is locked for payment."""
        owner = await UserFactory.create(db_session, provider_customer_id=CUSTOMER_ID)
        plan = await PlanMaterializer(db_session).get_or_create("pro")
        await db_session.commit()
        await SubscriptionFactory.create(
            db_session, user=owner, plan=plan, status=SubscriptionStatus.PAST_DUE
        )
        workspace = await WorkspaceFactory.create(db_session, owner=owner)

        response = await client.get(f"/api/billing/workspaces/{workspace.id}/access")

        assert response.status_code == 200
        assert response.json()["is_locked"] is True
        assert response.json()["reason"] == "payment_failed"

    @pytest.mark.asyncio
    async def test_access_open_during_trial(self, client: AsyncClient, db_session: AsyncSession):
        """Test that a running trial keeps the workspace open."""
        owner = await UserFactory.create(db_session, trial_end_date=utc_now() + timedelta(days=2))
        workspace = await WorkspaceFactory.create(db_session, owner=owner)

        response = await client.get(f"/api/billing/workspaces/{workspace.id}/access")

        assert response.json()["is_locked"] is False

    @pytest.mark.asyncio
    async def test_missing_workspace(self, client: AsyncClient):
        """Test that an unknown workspace answers 404."""
        response = await client.get("/api/billing/workspaces/99999/access")

        assert response.status_code == 404
