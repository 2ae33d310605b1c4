"""
Billing schemas for API request/response validation.

WHAT: Pydantic schemas for subscription state, limits, trials, plan
changes, workspace usage and webhooks.

HOW: Uses Pydantic v2 with Field descriptions and model_config. Service
results are dataclasses or ORM rows, so response models read attributes
(from_attributes=True) where they mirror one directly.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from entitlement_engine.models.subscription import SubscriptionStatus
from entitlement_engine.models.workspace import WorkspaceTier


# ============================================================================
# Subscription Schemas
# ============================================================================


class SubscriptionResponse(BaseModel):
    """Local replica of a provider subscription."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_subscription_id: str
    provider_customer_id: str
    user_id: int
    plan_id: int
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SubscriptionStatusResponse(BaseModel):
    """
    Subscription and trial state for billing pages.

    WHY: UNPAID counts as an active subscription so the UI shows billing
    recovery instead of an upgrade prompt.
    """

    has_active_subscription: bool
    has_valid_trial: bool
    trial_expired: bool
    trial_end_date: Optional[datetime] = None
    subscription: Optional[SubscriptionResponse] = None


class TrialResponse(BaseModel):
    user_id: int
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None


# ============================================================================
# Trigger Schemas
# ============================================================================


class VerifyCheckoutRequest(BaseModel):
    session_id: str = Field(..., min_length=1, description="Stripe Checkout session ID")


class VerifyCheckoutResponse(BaseModel):
    success: bool
    message: str
    payment_status: Optional[str] = None
    subscription_id: Optional[str] = Field(
        default=None, description="Stripe subscription ID when one was reconciled"
    )
    status: Optional[SubscriptionStatus] = None


class SyncResponse(BaseModel):
    """Result of re-reading a user's subscription from Stripe."""

    user_id: int
    action: str = Field(description="reconciled, canceled_missing or no_customer")
    subscription: Optional[SubscriptionResponse] = None
    canceled: int = 0


class WebhookResponse(BaseModel):
    """
    Response for webhook processing.

    WHY: Confirms the webhook was received. Processing failures are still
    acknowledged; status tells them apart for log correlation.
    """

    received: bool = True
    status: str = "processed"
    message: str = "Webhook processed successfully"


# ============================================================================
# Limits Schemas
# ============================================================================


class FeatureLimitResponse(BaseModel):
    max: int
    unlimited: bool


class EffectiveLimitsResponse(BaseModel):
    user_id: int
    plan_name: str
    limits: Dict[str, FeatureLimitResponse]


class LimitCheckResponse(BaseModel):
    feature: str
    allowed: bool
    limit: int = Field(description="Maximum allowed (-1 = unlimited)")
    usage: float
    message: Optional[str] = None


# ============================================================================
# Plan Change Schemas
# ============================================================================


class PlanChangeValidationResponse(BaseModel):
    valid: bool
    current_plan: Optional[str] = None
    new_plan: str
    message: Optional[str] = None


class ProrationPreviewResponse(BaseModel):
    """
    Cost of switching plans now.

    WHY: available is False when Stripe could not produce a preview; the UI
    then shows list prices only.
    """

    available: bool
    subscription_id: str
    new_plan: str
    immediate_charge: Optional[Decimal] = None
    credit: Optional[Decimal] = None
    next_invoice_total: Optional[Decimal] = None
    effective_date: Optional[datetime] = None
    period_end: Optional[datetime] = None
    currency: Optional[str] = None


# ============================================================================
# Workspace Schemas
# ============================================================================


class UsageResponse(BaseModel):
    workspaces: int
    projects: int
    files: int
    team_members: int
    storage_gb: float


class WorkspaceUsageResponse(BaseModel):
    workspace_id: int
    tier: WorkspaceTier
    plan_name: str
    can_upgrade: bool
    limits: Dict[str, FeatureLimitResponse]
    usage: UsageResponse


class WorkspaceAccessResponse(BaseModel):
    workspace_id: int
    owner_id: int
    is_locked: bool
    reason: Optional[str] = Field(
        default=None,
        description="trial_expired, payment_failed or subscription_inactive",
    )


class SweepErrorResponse(BaseModel):
    customer_id: str
    user_id: int
    error: str
    retryable: bool


class SweepReportResponse(BaseModel):
    checked: int
    reconciled: int
    canceled: int
    errors: List[SweepErrorResponse] = []
