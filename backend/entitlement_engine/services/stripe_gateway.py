"""
Stripe gateway.

WHAT: Thin async wrapper over the Stripe SDK for the handful of calls the
entitlement engine makes: retrieving subscriptions and checkout sessions,
listing a customer's subscriptions, previewing invoices, and verifying
webhook signatures.

WHY: Keeping SDK calls behind one class means:
1. Services and tests depend on a small interface that is easy to mock
2. SDK exceptions are translated to our error taxonomy in one place, so
   callers can tell "retry later" (TransientProviderError) from "fix the
   request" (StripeError) from "it doesn't exist"
3. Results are plain dicts, so snapshots parse the same whether they came
   from an API call or a webhook payload

HOW: The SDK is synchronous; calls run in a worker thread via
asyncio.to_thread so the event loop is never blocked.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import stripe

from entitlement_engine.core.config import settings
from entitlement_engine.core.exceptions import (
    AppException,
    ProviderResourceNotFoundError,
    StripeError,
    TransientProviderError,
    ValidationError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)


# ============================================================================
# Stripe Configuration
# ============================================================================


def configure_stripe() -> None:
    """
    Configure Stripe SDK with API key from settings.

    HOW: Sets the stripe.api_key module-level variable, and pins the API
    version when STRIPE_API_VERSION is set.
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    if settings.STRIPE_API_VERSION:
        stripe.api_version = settings.STRIPE_API_VERSION


# Initialize Stripe on module load
configure_stripe()


def translate_stripe_error(error: stripe.StripeError, operation: str, **context: Any) -> AppException:
    """
    Map an SDK exception onto the application error taxonomy.

    WHAT:
    - connection failures, rate limits, provider 5xx -> TransientProviderError
    - resource_missing -> ProviderResourceNotFoundError
    - everything else -> StripeError
    """
    http_status = getattr(error, "http_status", None) or 0
    message = f"Stripe {operation} failed"

    transient_types = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)
    if isinstance(error, transient_types) or http_status >= 500:
        return TransientProviderError(message, operation=operation, **context)
    if isinstance(error, stripe.InvalidRequestError) and getattr(error, "code", None) == "resource_missing":
        return ProviderResourceNotFoundError(
            f"Stripe object not found during {operation}",
            operation=operation,
            **context,
        )
    return StripeError(message, operation=operation, **context)


class StripeGateway:
    """
    Async facade over the Stripe SDK.

    Example:
        gateway = StripeGateway()
        subscription = await gateway.retrieve_subscription("sub_123")
        subscription["status"]
    """

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            translated = translate_stripe_error(e, operation)
            logger.error(
                f"Stripe {operation} failed: {e}",
                extra={
                    "operation": operation,
                    "stripe_error_type": type(e).__name__,
                    "retryable": isinstance(translated, TransientProviderError),
                },
            )
            raise translated from e

    @staticmethod
    def _to_dict(obj: Any) -> Dict[str, Any]:
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return dict(obj)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Retrieve one subscription."""
        result = await self._call(
            "subscription retrieve",
            stripe.Subscription.retrieve,
            subscription_id,
        )
        return self._to_dict(result)

    async def list_customer_subscriptions(
        self, customer_id: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        List a customer's subscriptions in every status, newest first.

        WHY: status="all" includes canceled subscriptions; the default list
        hides them, which would make a deleted subscription look missing.
        """
        result = await self._call(
            "subscription list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=limit,
        )
        return list(self._to_dict(result).get("data", []))

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """Retrieve a checkout session."""
        result = await self._call(
            "checkout session retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
        )
        return self._to_dict(result)

    async def preview_invoice(
        self,
        customer_id: str,
        subscription_id: str,
        items: List[Dict[str, Any]],
        proration_date: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Preview the next invoice if the subscription's items changed.

        Args:
            customer_id: Stripe customer ID
            subscription_id: Subscription being changed
            items: Subscription item changes, e.g. [{"id": "si_1", "price": "price_2"}]
            proration_date: Unix timestamp to prorate from (default: now)

        Returns:
            Invoice preview as a dict
        """
        subscription_details: Dict[str, Any] = {
            "items": items,
            "proration_behavior": "create_prorations",
        }
        if proration_date is not None:
            subscription_details["proration_date"] = proration_date

        result = await self._call(
            "invoice preview",
            stripe.Invoice.create_preview,
            customer=customer_id,
            subscription=subscription_id,
            subscription_details=subscription_details,
        )
        return self._to_dict(result)

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: If the signature doesn't verify
            ValidationError: If the payload isn't a valid event
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError()
        except ValueError as e:
            logger.warning(f"Webhook payload could not be parsed: {e}")
            raise ValidationError("Invalid webhook payload")
        return self._to_dict(event)


# Singleton gateway
_stripe_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    """Get or create the shared gateway."""
    global _stripe_gateway
    if _stripe_gateway is None:
        _stripe_gateway = StripeGateway()
    return _stripe_gateway
