"""
Billing triggers.

WHAT: The entry points that obtain a provider subscription snapshot and
hand it to the reconciler:
1. WebhookHandler - provider webhook events
2. CheckoutVerifier - the browser returning from checkout
3. SubscriptionSync - on-demand "re-read my subscription" for one user,
   also used per customer by the reconciliation sweep

WHY: The webhook can arrive before, after, or long after the user returns
from checkout, and sometimes not at all. Each trigger is independently
sufficient to converge the local state, and because they all end in the
same idempotent reconcile(), running several of them is harmless.

HOW: Triggers own no state transitions themselves; they only fetch,
parse, and delegate.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from entitlement_engine.core.exceptions import UserNotFoundError, ValidationError
from entitlement_engine.dao.user import UserDAO
from entitlement_engine.dao.webhook_event import ProviderWebhookEventDAO
from entitlement_engine.models.subscription import Subscription, SubscriptionStatus
from entitlement_engine.services.reconciler import (
    SubscriptionReconciler,
    SubscriptionSnapshot,
)
from entitlement_engine.services.stripe_gateway import StripeGateway, get_stripe_gateway


logger = logging.getLogger(__name__)


SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
INVOICE_EVENTS = frozenset(
    {
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    }
)


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


# ============================================================================
# Webhooks
# ============================================================================


@dataclass(frozen=True)
class WebhookOutcome:
    """What happened to one webhook delivery."""

    event_id: str
    event_type: str
    status: str  # processed | duplicate | ignored | failed
    message: Optional[str] = None


class WebhookHandler:
    """
    Processes verified provider webhook events.

    WHY: Processing failures are recorded on the event ledger and reported
    as a "failed" outcome rather than raised. The endpoint still answers
    200: the provider's redelivery and the sweep both repair missed state,
    while a 5xx storm from a config error would only add noise.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        reconciler: Optional[SubscriptionReconciler] = None,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler or SubscriptionReconciler(session_factory)

    async def handle_event(self, event: Dict[str, Any]) -> WebhookOutcome:
        """
        Process one verified event.

        Args:
            event: Event dict as returned by StripeGateway.construct_event

        Returns:
            WebhookOutcome
        """
        event_id = event["id"]
        event_type = event["type"]

        logger.info(
            f"Processing webhook: {event_type}",
            extra={"event_id": event_id, "event_type": event_type},
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    ledger = await ProviderWebhookEventDAO(session).get_or_create(event_id, event_type)
                    already_processed = ledger.processed_at is not None
        except IntegrityError:
            # A concurrent delivery of the same event recorded it first
            logger.info(f"Webhook {event_id} is being processed by another delivery")
            return WebhookOutcome(event_id, event_type, "duplicate")

        if already_processed:
            logger.info(f"Webhook {event_id} already processed; skipping")
            return WebhookOutcome(event_id, event_type, "duplicate")

        try:
            status, message = await self._dispatch(event_type, event["data"]["object"])
        except Exception as e:
            logger.error(
                f"Error processing webhook {event_type}: {e}",
                extra={"event_id": event_id, "event_type": event_type},
                exc_info=True,
            )
            await self._record(event_id, error=f"{type(e).__name__}: {e}")
            return WebhookOutcome(event_id, event_type, "failed", str(e))

        await self._record(event_id)
        return WebhookOutcome(event_id, event_type, status, message)

    async def _dispatch(self, event_type: str, data: Dict[str, Any]):
        if event_type in SUBSCRIPTION_EVENTS:
            snapshot = SubscriptionSnapshot.from_provider(data)
            if event_type == "customer.subscription.deleted":
                snapshot = dataclasses.replace(snapshot, status=SubscriptionStatus.CANCELED)
            result = await self.reconciler.reconcile(snapshot)
            return "processed", f"Subscription {snapshot.id} is {result.subscription.status.value}"

        if event_type in INVOICE_EVENTS:
            # Payment outcomes arrive again as subscription status changes,
            # so they are only logged here
            log = logger.warning if event_type == "invoice.payment_failed" else logger.info
            log(
                f"Invoice event {event_type} for customer {_object_id(data.get('customer'))}",
                extra={
                    "invoice_id": data.get("id"),
                    "customer_id": _object_id(data.get("customer")),
                    "subscription_id": _object_id(data.get("subscription")),
                },
            )
            return "processed", None

        logger.info(f"Unhandled webhook event type: {event_type}")
        return "ignored", None

    async def _record(self, event_id: str, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                dao = ProviderWebhookEventDAO(session)
                ledger = await dao.get_by_event_id(event_id)
                if ledger is None:
                    return
                if error is None:
                    await dao.mark_processed(ledger)
                else:
                    await dao.mark_failed(ledger, error)


# ============================================================================
# Checkout verification
# ============================================================================


@dataclass(frozen=True)
class CheckoutVerification:
    success: bool
    message: str
    payment_status: Optional[str] = None
    subscription: Optional[Subscription] = None


class CheckoutVerifier:
    """
    Reconciles a subscription right after checkout, without waiting for
    the webhook.

    Example:
        verifier = CheckoutVerifier(AsyncSessionLocal)
        outcome = await verifier.verify(user_id, "cs_test_123")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        reconciler: Optional[SubscriptionReconciler] = None,
        gateway: Optional[StripeGateway] = None,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler or SubscriptionReconciler(session_factory)
        self.gateway = gateway or get_stripe_gateway()

    async def verify(self, user_id: int, session_id: str) -> CheckoutVerification:
        """
        Verify a checkout session and reconcile its subscription.

        WHAT:
        1. Link the session's customer to the user (checkout may have
           created a new customer)
        2. If the session is not paid, report failure and stop
        3. If it created a subscription, fetch and reconcile it

        Raises:
            UserNotFoundError: If the user doesn't exist
            ValidationError: If the session has no customer, or its customer
                is linked to a different user
        """
        checkout = await self.gateway.retrieve_checkout_session(session_id)

        customer_id = _object_id(checkout.get("customer"))
        if not customer_id:
            raise ValidationError("Checkout session has no customer", session_id=session_id)

        await self._link_customer(user_id, customer_id)

        payment_status = checkout.get("payment_status")
        if payment_status != "paid":
            logger.info(
                f"Checkout {session_id} not paid ({payment_status})",
                extra={"user_id": user_id, "session_id": session_id},
            )
            return CheckoutVerification(
                success=False,
                message="Payment not completed",
                payment_status=payment_status,
            )

        subscription_id = _object_id(checkout.get("subscription"))
        if not subscription_id:
            return CheckoutVerification(
                success=True,
                message="Payment verified successfully",
                payment_status=payment_status,
            )

        data = await self.gateway.retrieve_subscription(subscription_id)
        result = await self.reconciler.reconcile(SubscriptionSnapshot.from_provider(data))
        return CheckoutVerification(
            success=True,
            message="Subscription activated successfully",
            payment_status=payment_status,
            subscription=result.subscription,
        )

    async def _link_customer(self, user_id: int, customer_id: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                user_dao = UserDAO(session)
                user = await user_dao.get_by_id(user_id)
                if user is None:
                    raise UserNotFoundError(user_id=user_id)
                if user.provider_customer_id == customer_id:
                    return

                other = await user_dao.get_by_provider_customer_id(customer_id)
                if other is not None and other.id != user_id:
                    logger.warning(
                        f"Checkout customer {customer_id} belongs to user {other.id}, not {user_id}",
                        extra={"user_id": user_id, "customer_id": customer_id},
                    )
                    raise ValidationError("Checkout session belongs to a different account")

                user.provider_customer_id = customer_id

        logger.info(
            f"Linked customer {customer_id} to user {user_id}",
            extra={"user_id": user_id, "customer_id": customer_id},
        )


# ============================================================================
# On-demand sync
# ============================================================================


@dataclass(frozen=True)
class SyncOutcome:
    """Result of re-reading one customer's subscriptions from the provider."""

    user_id: int
    customer_id: Optional[str]
    action: str  # reconciled | canceled_missing | no_customer
    subscription: Optional[Subscription] = None
    canceled: int = 0


class SubscriptionSync:
    """
    Re-derives a user's subscription from the provider.

    WHAT: Lists the customer's subscriptions (all statuses, newest first),
    reconciles the active one or else the newest, and cancels local rows
    when the provider has none at all.
    """

    LIST_LIMIT = 10

    def __init__(
        self,
        session_factory: async_sessionmaker,
        reconciler: Optional[SubscriptionReconciler] = None,
        gateway: Optional[StripeGateway] = None,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler or SubscriptionReconciler(session_factory)
        self.gateway = gateway or get_stripe_gateway()

    async def sync_user(self, user_id: int) -> SyncOutcome:
        """
        Sync the subscription of one user.

        Raises:
            UserNotFoundError: If the user doesn't exist
        """
        async with self.session_factory() as session:
            user = await UserDAO(session).get_by_id(user_id)
            if user is None:
                raise UserNotFoundError(user_id=user_id)
            customer_id = user.provider_customer_id

        if not customer_id:
            return SyncOutcome(user_id=user_id, customer_id=None, action="no_customer")
        return await self.sync_customer(user_id, customer_id)

    async def sync_customer(self, user_id: int, customer_id: str) -> SyncOutcome:
        """Sync a known (user, customer) pair."""
        subscriptions = await self.gateway.list_customer_subscriptions(
            customer_id, limit=self.LIST_LIMIT
        )

        if not subscriptions:
            canceled = await self.reconciler.cancel_missing(user_id)
            return SyncOutcome(
                user_id=user_id,
                customer_id=customer_id,
                action="canceled_missing",
                canceled=canceled,
            )

        chosen = next(
            (sub for sub in subscriptions if sub.get("status") == SubscriptionStatus.ACTIVE.value),
            subscriptions[0],
        )
        result = await self.reconciler.reconcile(SubscriptionSnapshot.from_provider(chosen))
        return SyncOutcome(
            user_id=user_id,
            customer_id=customer_id,
            action="reconciled",
            subscription=result.subscription,
        )
