"""
Billing API endpoints.

WHAT: REST endpoints over the entitlement engine:
1. POST /webhooks/stripe - Stripe subscription webhooks
2. POST /billing/users/{id}/verify-checkout - reconcile after checkout
3. POST /billing/users/{id}/sync - re-read a user's subscription from Stripe
4. GET /billing/users/{id}/limits[/{feature}] - effective limits and checks
5. GET /billing/users/{id}/status, POST /billing/users/{id}/trial
6. GET /billing/plan-change/validate, GET /billing/subscriptions/{id}/proration-preview
7. GET /billing/workspaces/{id}/usage, GET /billing/workspaces/{id}/access
8. POST /billing/sweep - run the reconciliation sweep now

WHY: Upstream product code (workspace creation, uploads, invites) asks
these endpoints before consuming a feature, and the billing UI reads
status, trial and preview data from them.

SECURITY (OWASP):
- A02: Webhook signature verification before any processing
- Authentication is enforced by the gateway in front of this service
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.core.exceptions import ValidationError
from entitlement_engine.db.session import get_db, get_session_factory
from entitlement_engine.schemas.billing import (
    EffectiveLimitsResponse,
    FeatureLimitResponse,
    LimitCheckResponse,
    PlanChangeValidationResponse,
    ProrationPreviewResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    SweepReportResponse,
    SyncResponse,
    TrialResponse,
    UsageResponse,
    VerifyCheckoutRequest,
    VerifyCheckoutResponse,
    WebhookResponse,
    WorkspaceAccessResponse,
    WorkspaceUsageResponse,
)
from entitlement_engine.services.billing_triggers import (
    CheckoutVerifier,
    SubscriptionSync,
    WebhookHandler,
)
from entitlement_engine.services.entitlement_service import EntitlementService
from entitlement_engine.services.plan_catalog import Feature, FeatureLimits
from entitlement_engine.services.proration_service import ProrationService
from entitlement_engine.services.reconciliation_sweep import ReconciliationSweep
from entitlement_engine.services.stripe_gateway import StripeGateway, get_stripe_gateway


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def _limits_response(limits: FeatureLimits) -> dict:
    return {
        feature: FeatureLimitResponse(**values)
        for feature, values in limits.to_dict().items()
    }


# ============================================================================
# Triggers
# ============================================================================


@router.post(
    "/users/{user_id}/verify-checkout",
    response_model=VerifyCheckoutResponse,
    summary="Verify a checkout session",
    description="Reconciles the subscription created by a checkout session without waiting for the webhook.",
)
async def verify_checkout(
    user_id: int,
    request: VerifyCheckoutRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Verify checkout and activate the subscription.

    WHY: Users land on the success page seconds after paying, often before
    the webhook. This call makes the new plan visible immediately.
    """
    verifier = CheckoutVerifier(session_factory, gateway=gateway)
    outcome = await verifier.verify(user_id, request.session_id)

    subscription = outcome.subscription
    return VerifyCheckoutResponse(
        success=outcome.success,
        message=outcome.message,
        payment_status=outcome.payment_status,
        subscription_id=subscription.provider_subscription_id if subscription else None,
        status=subscription.status if subscription else None,
    )


@router.post(
    "/users/{user_id}/sync",
    response_model=SyncResponse,
    summary="Sync a user's subscription",
    description="Re-reads the user's subscriptions from Stripe and reconciles them.",
)
async def sync_subscription(
    user_id: int,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    outcome = await SubscriptionSync(session_factory, gateway=gateway).sync_user(user_id)
    return SyncResponse(
        user_id=outcome.user_id,
        action=outcome.action,
        subscription=(
            SubscriptionResponse.model_validate(outcome.subscription)
            if outcome.subscription
            else None
        ),
        canceled=outcome.canceled,
    )


@router.post(
    "/sweep",
    response_model=SweepReportResponse,
    summary="Run the reconciliation sweep",
    description="Reconciles every billing customer now instead of waiting for the schedule.",
)
async def run_sweep(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    report = await ReconciliationSweep(session_factory, gateway=gateway).run()
    return SweepReportResponse(**report.to_dict())


# ============================================================================
# Limits & Status
# ============================================================================


@router.get(
    "/users/{user_id}/limits",
    response_model=EffectiveLimitsResponse,
    summary="Get effective limits",
)
async def get_effective_limits(
    user_id: int,
    db: AsyncSession = Depends(get_db),
):
    """
    Get the limits that currently apply to a user.

    WHY: Users without an entitling subscription get the free plan's limits,
    so this never 404s for a user who hasn't subscribed.
    """
    plan_name, limits = await EntitlementService(db).resolve_plan(user_id)
    return EffectiveLimitsResponse(
        user_id=user_id,
        plan_name=plan_name,
        limits=_limits_response(limits),
    )


@router.get(
    "/users/{user_id}/limits/{feature}",
    response_model=LimitCheckResponse,
    summary="Check a feature limit",
)
async def check_feature_limit(
    user_id: int,
    feature: Feature,
    usage: float = Query(..., ge=0, description="Units already consumed"),
    db: AsyncSession = Depends(get_db),
):
    result = await EntitlementService(db).check_feature_limit(user_id, feature, usage)
    return LimitCheckResponse(
        feature=feature.value,
        allowed=result.allowed,
        limit=result.limit,
        usage=result.usage,
        message=result.message,
    )


@router.get(
    "/users/{user_id}/status",
    response_model=SubscriptionStatusResponse,
    summary="Get subscription status",
)
async def get_subscription_status(
    user_id: int,
    db: AsyncSession = Depends(get_db),
):
    summary = await EntitlementService(db).get_subscription_status(user_id)
    return SubscriptionStatusResponse(
        has_active_subscription=summary.has_active_subscription,
        has_valid_trial=summary.has_valid_trial,
        trial_expired=summary.trial_expired,
        trial_end_date=summary.trial_end_date,
        subscription=(
            SubscriptionResponse.model_validate(summary.subscription)
            if summary.subscription
            else None
        ),
    )


@router.post(
    "/users/{user_id}/trial",
    response_model=TrialResponse,
    summary="Start the trial",
    description="Starts the app-level trial. Calling it again does not extend the trial.",
)
async def start_trial(
    user_id: int,
    db: AsyncSession = Depends(get_db),
):
    user = await EntitlementService(db).initialize_trial(user_id)
    await db.commit()
    return TrialResponse(
        user_id=user.id,
        trial_start_date=user.trial_start_date,
        trial_end_date=user.trial_end_date,
    )


# ============================================================================
# Plan Changes
# ============================================================================


@router.get(
    "/plan-change/validate",
    response_model=PlanChangeValidationResponse,
    summary="Validate a plan change",
    description=(
        "Checks a plan change against the allow-list. Pass user_id to validate "
        "against the user's current subscription, or current_plan directly."
    ),
)
async def validate_plan_change(
    new_plan: str = Query(..., min_length=1),
    user_id: Optional[int] = Query(None),
    current_plan: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    service = ProrationService(db, gateway=gateway)
    if user_id is not None:
        result = await service.validate_plan_change_for_user(user_id, new_plan)
    else:
        result = service.validate_plan_change(current_plan, new_plan)

    return PlanChangeValidationResponse(
        valid=result.valid,
        current_plan=current_plan,
        new_plan=new_plan,
        message=result.message,
    )


@router.get(
    "/subscriptions/{subscription_id}/proration-preview",
    response_model=ProrationPreviewResponse,
    summary="Preview the cost of a plan change",
)
async def proration_preview(
    subscription_id: str,
    new_plan: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Preview what switching a subscription to new_plan costs now.

    WHY: A missing preview is not an error. The UI falls back to list
    prices, so this answers 200 with available=false.
    """
    preview = await ProrationService(db, gateway=gateway).preview_proration(
        subscription_id, new_plan
    )
    if preview is None:
        return ProrationPreviewResponse(
            available=False,
            subscription_id=subscription_id,
            new_plan=new_plan,
        )

    return ProrationPreviewResponse(
        available=True,
        subscription_id=subscription_id,
        new_plan=new_plan,
        immediate_charge=preview.immediate_charge,
        credit=preview.credit,
        next_invoice_total=preview.next_invoice_total,
        effective_date=preview.effective_date,
        period_end=preview.period_end,
        currency=preview.currency,
    )


# ============================================================================
# Workspaces
# ============================================================================


@router.get(
    "/workspaces/{workspace_id}/usage",
    response_model=WorkspaceUsageResponse,
    summary="Get workspace usage and limits",
)
async def get_workspace_usage(
    workspace_id: int,
    db: AsyncSession = Depends(get_db),
):
    entitlements = await EntitlementService(db).get_workspace_entitlements(workspace_id)
    return WorkspaceUsageResponse(
        workspace_id=entitlements.workspace_id,
        tier=entitlements.tier,
        plan_name=entitlements.plan_name,
        can_upgrade=entitlements.can_upgrade,
        limits=_limits_response(entitlements.limits),
        usage=UsageResponse(**entitlements.usage.to_dict()),
    )


@router.get(
    "/workspaces/{workspace_id}/access",
    response_model=WorkspaceAccessResponse,
    summary="Check whether a workspace is locked",
)
async def get_workspace_access(
    workspace_id: int,
    db: AsyncSession = Depends(get_db),
):
    access = await EntitlementService(db).check_workspace_access(workspace_id)
    return WorkspaceAccessResponse(
        workspace_id=access.workspace_id,
        owner_id=access.owner_id,
        is_locked=access.is_locked,
        reason=access.reason.value if access.reason else None,
    )


# ============================================================================
# Stripe Webhooks
# ============================================================================


# Separate router for webhooks (signature-authenticated, no session auth)
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@webhooks_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook",
    description="Handles Stripe subscription and invoice webhooks.",
)
async def stripe_webhook(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """
    Handle Stripe webhooks.

    WHY: Webhooks are the fastest trigger for subscription changes:
    - customer.subscription.created / updated / deleted: reconciled
    - invoice.payment_succeeded / payment_failed: logged

    SECURITY (OWASP A02):
    - Verifies webhook signature before processing
    - Prevents webhook forgery attacks

    Returns:
        Acknowledgment of webhook receipt. Processing errors still return
        200; redelivery and the sweep repair the state.
    """
    if not stripe_signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise ValidationError("Missing Stripe-Signature header")

    # Raw body is required for signature verification
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)

    outcome = await WebhookHandler(session_factory).handle_event(event)
    return WebhookResponse(
        received=True,
        status=outcome.status,
        message=outcome.message or f"Webhook {outcome.event_type} {outcome.status}",
    )
