"""
Plan change validation and proration previews.

WHAT: Decides whether a plan change is allowed and asks the billing
provider what the change would cost right now.

WHY: Users must see the immediate charge (or credit) before confirming an
upgrade, and nonsensical changes must be rejected with a message the UI can
show as-is.

HOW:
- Legal transitions are an explicit allow-list; anything not listed is
  rejected. Yearly -> monthly is only allowed once the paid year is over.
- The preview uses the provider's invoice preview with
  proration_behavior=create_prorations and reads the proration lines.
- A preview is advisory: any failure yields None, never an exception.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.dao.plan import PlanDAO
from entitlement_engine.dao.subscription import SubscriptionDAO
from entitlement_engine.models.base import utc_now
from entitlement_engine.services.plan_catalog import (
    PlanCatalog,
    PriceIdentifierMap,
    get_plan_catalog,
)
from entitlement_engine.services.reconciler import from_unix
from entitlement_engine.services.stripe_gateway import StripeGateway, get_stripe_gateway


logger = logging.getLogger(__name__)


# (from, to) plan name pairs users may switch between
ALLOWED_PLAN_CHANGES = frozenset(
    {
        ("free", "pro"),
        ("free", "pro_annual"),
        ("pro", "pro_annual"),
        ("pro", "free"),
        ("pro_annual", "free"),
        ("pro_annual", "pro"),
    }
)

# Allowed only after the current (yearly) period has ended
PERIOD_END_ONLY_CHANGES = frozenset({("pro_annual", "pro")})


@dataclass(frozen=True)
class PlanChangeValidation:
    valid: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class ProrationPreview:
    """
    Cost of switching plans now. Amounts are in major currency units.

    immediate_charge: net amount invoiced now for the switch (never negative)
    credit: unused time on the current plan credited back
    next_invoice_total: regular price of the new plan per period
    """

    immediate_charge: Decimal
    credit: Decimal
    next_invoice_total: Decimal
    effective_date: datetime
    period_end: Optional[datetime]
    currency: str


def _minor_to_major(amount: Any) -> Decimal:
    return (Decimal(int(amount or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def _is_proration_line(line: Dict[str, Any]) -> bool:
    """
    Check whether an invoice line is a proration.

    Older API versions flag lines with "proration"; newer ones nest the flag
    under parent.subscription_item_details.
    """
    if line.get("proration") is True:
        return True
    parent = line.get("parent") or {}
    details = parent.get("subscription_item_details") or {}
    return details.get("proration") is True


class ProrationService:
    """
    Plan change rules and cost previews.

    Example:
        service = ProrationService(db)
        check = service.validate_plan_change("pro", "pro_annual")
        preview = await service.preview_proration("sub_123", "pro_annual")
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[StripeGateway] = None,
        catalog: Optional[PlanCatalog] = None,
    ):
        self.db = db
        self.gateway = gateway or get_stripe_gateway()
        self.catalog = catalog or get_plan_catalog()
        self.price_map = PriceIdentifierMap(self.catalog)

    # ------------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------------

    def validate_plan_change(
        self,
        current_plan: Optional[str],
        new_plan: str,
        current_period_end: Optional[datetime] = None,
    ) -> PlanChangeValidation:
        """
        Check whether switching from current_plan to new_plan is allowed.

        Args:
            current_plan: Current plan name, or None for a first subscription
            new_plan: Target plan name
            current_period_end: End of the current billing period, needed for
                yearly -> monthly switches

        Returns:
            PlanChangeValidation with a user-facing message when invalid
        """
        if current_plan and current_plan == new_plan:
            return PlanChangeValidation(False, "Cannot change to the same plan")

        target_check = self._validate_target(new_plan)
        if not target_check.valid or not current_plan:
            return target_check

        if (current_plan, new_plan) not in ALLOWED_PLAN_CHANGES:
            return PlanChangeValidation(
                False, f"Changing from {current_plan} to {new_plan} is not supported"
            )

        if (current_plan, new_plan) in PERIOD_END_ONLY_CHANGES:
            if current_period_end is None or utc_now() < current_period_end:
                until = (
                    f" on {current_period_end.date().isoformat()}" if current_period_end else ""
                )
                return PlanChangeValidation(
                    False,
                    "Switching from yearly to monthly billing is available "
                    f"once your current billing period ends{until}",
                )

        return PlanChangeValidation(True)

    async def validate_plan_change_for_user(self, user_id: int, new_plan: str) -> PlanChangeValidation:
        """Validate a plan change against the user's authoritative subscription."""
        subscription = await SubscriptionDAO(self.db).get_authoritative_for_user(user_id)
        current_plan = None
        current_period_end = None
        if subscription is not None:
            plan = await PlanDAO(self.db).get_by_id(subscription.plan_id)
            current_plan = plan.name if plan is not None else None
            current_period_end = subscription.current_period_end
        return self.validate_plan_change(current_plan, new_plan, current_period_end)

    def _validate_target(self, new_plan: str) -> PlanChangeValidation:
        if not self.catalog.has_plan(new_plan):
            return PlanChangeValidation(False, f"Plan not found in config: {new_plan}")

        definition = self.catalog.plan_definition(new_plan)
        if not definition.is_active:
            return PlanChangeValidation(False, "Target plan is not active")
        if definition.is_paid and not definition.price_id:
            return PlanChangeValidation(False, "Target plan is not configured with Stripe")
        return PlanChangeValidation(True)

    # ------------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------------

    async def preview_proration(
        self,
        provider_subscription_id: str,
        new_plan: str,
    ) -> Optional[ProrationPreview]:
        """
        Preview the cost of moving a subscription to another plan now.

        Args:
            provider_subscription_id: Stripe subscription ID
            new_plan: Target plan name

        Returns:
            ProrationPreview, or None when no preview is available (unknown
            plan, missing price id, provider failure, unexpected payload)
        """
        try:
            new_price_id = self.price_map.price_id_for(new_plan)
            if not new_price_id:
                logger.warning(
                    f"No price id configured for plan {new_plan}; cannot preview",
                    extra={"plan_name": new_plan},
                )
                return None

            subscription = await self.gateway.retrieve_subscription(provider_subscription_id)
            items = (subscription.get("items") or {}).get("data") or []
            if not items:
                return None

            customer = subscription.get("customer")
            if isinstance(customer, dict):
                customer = customer.get("id")

            proration_date = int(time.time())
            invoice = await self.gateway.preview_invoice(
                customer_id=customer,
                subscription_id=provider_subscription_id,
                items=[{"id": items[0]["id"], "price": new_price_id}],
                proration_date=proration_date,
            )

            return self._build_preview(invoice, subscription, new_plan, proration_date)

        except Exception as e:
            logger.warning(
                f"Proration preview unavailable for {provider_subscription_id}: {e}",
                extra={"subscription_id": provider_subscription_id, "plan_name": new_plan},
            )
            return None

    def _build_preview(
        self,
        invoice: Dict[str, Any],
        subscription: Dict[str, Any],
        new_plan: str,
        proration_date: int,
    ) -> ProrationPreview:
        lines: List[Dict[str, Any]] = (invoice.get("lines") or {}).get("data") or []
        proration_amounts = [int(line.get("amount") or 0) for line in lines if _is_proration_line(line)]

        charges = sum(amount for amount in proration_amounts if amount > 0)
        credits = -sum(amount for amount in proration_amounts if amount < 0)

        if proration_amounts:
            immediate = max(charges - credits, 0)
        else:
            # No separate proration lines: the amount due is the switch charge
            immediate = max(int(invoice.get("amount_due") or 0), 0)

        items = (subscription.get("items") or {}).get("data") or []
        period_end = from_unix(subscription.get("current_period_end")) or (
            from_unix(items[0].get("current_period_end")) if items else None
        )

        return ProrationPreview(
            immediate_charge=_minor_to_major(immediate),
            credit=_minor_to_major(credits),
            next_invoice_total=self.catalog.plan_definition(new_plan).price,
            effective_date=from_unix(proration_date),
            period_end=period_end,
            currency=str(invoice.get("currency") or "usd").upper(),
        )
