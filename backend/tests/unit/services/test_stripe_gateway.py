"""
Unit tests for the Stripe gateway.

WHY: Verifies that SDK errors land in the right bucket of our taxonomy,
since the sweep and the API decide on retries from that bucket alone.
"""

from unittest.mock import MagicMock, patch

import pytest
import stripe

from entitlement_engine.core.exceptions import (
    ProviderResourceNotFoundError,
    StripeError,
    TransientProviderError,
    ValidationError,
    WebhookSignatureError,
)
from entitlement_engine.services.stripe_gateway import StripeGateway, translate_stripe_error


class TestTranslateStripeError:
    """Tests for SDK error translation."""

    def test_connection_error_is_transient(self):
        """Test that network failures are retryable."""
        error = translate_stripe_error(stripe.APIConnectionError("timeout"), "subscription retrieve")

        assert isinstance(error, TransientProviderError)
        assert error.status_code == 503

    def test_rate_limit_is_transient(self):
        """Test that rate limiting is retryable."""
        error = translate_stripe_error(stripe.RateLimitError("slow down"), "subscription list")

        assert isinstance(error, TransientProviderError)

    def test_resource_missing(self):
        """Test that a missing object maps to a not-found error."""
        sdk_error = stripe.InvalidRequestError(
            "No such subscription", "id", code="resource_missing", http_status=404
        )

        error = translate_stripe_error(sdk_error, "subscription retrieve", subscription_id="sub_x")

        assert isinstance(error, ProviderResourceNotFoundError)
        assert error.context["subscription_id"] == "sub_x"

    def test_other_errors(self):
        """Test that bad requests are permanent Stripe errors."""
        sdk_error = stripe.InvalidRequestError("Invalid price", "price", http_status=400)

        error = translate_stripe_error(sdk_error, "invoice preview")

        assert type(error) is StripeError
        assert error.message == "Stripe invoice preview failed"


class TestStripeGateway:
    """Tests for the async SDK facade."""

    @pytest.mark.asyncio
    async def test_retrieve_subscription_returns_dict(self):
        """Test that SDK objects are returned as plain dicts."""
        sdk_object = MagicMock()
        sdk_object.to_dict.return_value = {"id": "sub_1", "status": "active"}

        with patch("stripe.Subscription.retrieve", return_value=sdk_object) as mock_retrieve:
            result = await StripeGateway().retrieve_subscription("sub_1")

        assert result == {"id": "sub_1", "status": "active"}
        mock_retrieve.assert_called_once_with("sub_1")

    @pytest.mark.asyncio
    async def test_list_includes_all_statuses(self):
        """Test that listing asks for canceled subscriptions too."""
        with patch("stripe.Subscription.list", return_value={"data": [{"id": "sub_1"}]}) as mock_list:
            result = await StripeGateway().list_customer_subscriptions("cus_1", limit=5)

        assert result == [{"id": "sub_1"}]
        mock_list.assert_called_once_with(customer="cus_1", status="all", limit=5)

    @pytest.mark.asyncio
    async def test_sdk_error_is_translated(self):
        """Test that SDK exceptions surface as application errors."""
        with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(TransientProviderError):
                await StripeGateway().retrieve_subscription("sub_1")

    @pytest.mark.asyncio
    async def test_preview_requests_prorations(self):
        """Test that invoice previews ask for proration lines."""
        with patch("stripe.Invoice.create_preview", return_value={"lines": {"data": []}}) as mock_preview:
            await StripeGateway().preview_invoice(
                customer_id="cus_1",
                subscription_id="sub_1",
                items=[{"id": "si_1", "price": "price_2"}],
                proration_date=1700000000,
            )

        details = mock_preview.call_args.kwargs["subscription_details"]
        assert details["proration_behavior"] == "create_prorations"
        assert details["proration_date"] == 1700000000


class TestConstructEvent:
    """Tests for webhook signature verification."""

    def test_valid_signature(self):
        """Test that a verified event is returned as a dict."""
        with patch("stripe.Webhook.construct_event", return_value={"id": "evt_1", "type": "x"}) as mock_construct:
            event = StripeGateway().construct_event(b"{}", "t=1,v1=abc")

        assert event["id"] == "evt_1"
        mock_construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test")

    def test_bad_signature(self):
        """Test that a bad signature raises WebhookSignatureError."""
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")

        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(WebhookSignatureError):
                StripeGateway().construct_event(b"{}", "t=1,v1=abc")

    def test_bad_payload(self):
        """Test that an unparseable payload raises ValidationError."""
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            with pytest.raises(ValidationError):
                StripeGateway().construct_event(b"not json", "t=1,v1=abc")
