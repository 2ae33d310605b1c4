"""
Subscription reconciliation.

WHAT: Merges one provider subscription snapshot into the local subscription
replica, idempotently, and applies the resulting workspace tier.

WHY: Three triggers observe the same provider subscription independently
and may race: the webhook, the post-checkout verification call, and the
periodic sweep. Instead of three slightly different update routines, every
trigger funnels into reconcile(snapshot), which is safe to run any number
of times in any order:
1. No duplicate rows (provider_subscription_id is unique; a lost insert
   race is retried through the update path)
2. At most one non-CANCELED row per user (the create path supersedes
   older rows)
3. Cancellation history survives (canceled_at is cleared only when a
   pending cancellation is undone)
4. No entitlement for unpaid subscriptions (INCOMPLETE resets the tier)

HOW: Each snapshot is applied in its own transaction opened from a session
factory. Any failure rolls the whole snapshot back.

Example:
    reconciler = SubscriptionReconciler(AsyncSessionLocal)
    snapshot = SubscriptionSnapshot.from_provider(stripe_subscription_dict)
    result = await reconciler.reconcile(snapshot)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_engine.core.config import settings
from entitlement_engine.core.exceptions import (
    ConflictError,
    UnsupportedStatusError,
    UserNotFoundError,
    ValidationError,
)
from entitlement_engine.dao.subscription import SubscriptionDAO
from entitlement_engine.dao.user import UserDAO
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.subscription import Subscription, SubscriptionStatus
from entitlement_engine.models.workspace import WorkspaceTier
from entitlement_engine.services.entitlement_service import apply_tier_for_status
from entitlement_engine.services.plan_catalog import (
    PlanCatalog,
    PriceIdentifierMap,
    get_plan_catalog,
)
from entitlement_engine.services.plan_materializer import PlanMaterializer


logger = logging.getLogger(__name__)


def from_unix(value: Any) -> Optional[datetime]:
    """Convert a provider Unix timestamp to a naive UTC datetime."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _object_id(value: Any) -> Optional[str]:
    """Provider references are either an id string or an expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


# ============================================================================
# Snapshot
# ============================================================================


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    Point-in-time view of a provider subscription.

    current_period_end may be None; the reconciler derives a fallback.
    """

    id: str
    customer_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    price_id: Optional[str] = None

    @classmethod
    def from_provider(cls, data: Mapping[str, Any]) -> "SubscriptionSnapshot":
        """
        Parse a Stripe subscription object (as a dict).

        WHY: Newer API versions moved the billing period onto subscription
        items, and webhook payloads for some events omit it entirely. The
        parser reads the top level first, then the first item, and for the
        start falls back to start_date, then created, then now.

        Raises:
            ValidationError: If id or customer is missing
            UnsupportedStatusError: If the status is not one we model
        """
        subscription_id = data.get("id")
        customer_id = _object_id(data.get("customer"))
        if not subscription_id or not customer_id:
            raise ValidationError(
                "Subscription snapshot is missing id or customer",
                subscription_id=subscription_id,
            )

        raw_status = data.get("status")
        try:
            status = SubscriptionStatus(raw_status)
        except ValueError:
            logger.error(
                f"Unsupported subscription status {raw_status!r} on {subscription_id}",
                extra={"subscription_id": subscription_id, "status": raw_status},
            )
            raise UnsupportedStatusError(
                f"Subscription status '{raw_status}' is not supported",
                subscription_id=subscription_id,
                status=raw_status,
            )

        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}

        period_start = (
            from_unix(data.get("current_period_start"))
            or from_unix(first_item.get("current_period_start"))
            or from_unix(data.get("start_date"))
            or from_unix(data.get("created"))
            or utc_now()
        )
        period_end = from_unix(data.get("current_period_end")) or from_unix(
            first_item.get("current_period_end")
        )

        price_id = _object_id(first_item.get("price")) or _object_id(data.get("plan"))

        return cls(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at=from_unix(data.get("cancel_at")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=from_unix(data.get("canceled_at")),
            trial_start=from_unix(data.get("trial_start")),
            trial_end=from_unix(data.get("trial_end")),
            price_id=price_id,
        )

    def resolved_period_end(self, fallback_days: int) -> datetime:
        """
        Period end with fallbacks.

        WHAT: explicit end, else cancel_at, else start + fallback_days.
        """
        if self.current_period_end is not None:
            return self.current_period_end
        if self.cancel_at is not None:
            return self.cancel_at
        return self.current_period_start + timedelta(days=fallback_days)


@dataclass(frozen=True)
class ReconcileResult:
    """What a reconciliation did."""

    subscription: Subscription
    plan_name: str
    created: bool
    reactivated: bool
    superseded: int
    tier_applied: Optional[WorkspaceTier]


# ============================================================================
# Reconciler
# ============================================================================


class SubscriptionReconciler:
    """
    Idempotent merge of provider snapshots into the subscription table.

    Args:
        session_factory: Callable returning a new AsyncSession; each snapshot
            gets its own session and transaction
        catalog: Plan catalog (defaults to the shared one)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        catalog: Optional[PlanCatalog] = None,
    ):
        self.session_factory = session_factory
        self.catalog = catalog or get_plan_catalog()
        self.price_map = PriceIdentifierMap(self.catalog)

    async def reconcile(
        self,
        snapshot: SubscriptionSnapshot,
        plan_name: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Merge one snapshot into the local replica.

        WHAT:
        1. Resolve the plan from the snapshot's price id (unless given) and
           materialize its row
        2. Update the existing row for the provider id, or create one after
           superseding the user's other open rows
        3. Apply the workspace tier implied by the new status

        WHY: The plan is resolved before any write so that an unknown price
        id aborts with nothing persisted. Replaying a snapshot leaves every
        domain column unchanged; only updated_at moves, since it records the
        last confirmation and orders the authoritative row.

        Args:
            snapshot: Provider subscription snapshot
            plan_name: Already-resolved plan name, skips price resolution

        Returns:
            ReconcileResult

        Raises:
            UnknownPriceError: Price id maps to no plan (nothing written)
            UserNotFoundError: No user is linked to the snapshot's customer
            ConflictError: The insert race was lost twice
        """
        if plan_name is None:
            plan_name = self.price_map.resolve_plan_by_price_id(snapshot.price_id).plan_name

        try:
            return await self._reconcile_once(snapshot, plan_name)
        except IntegrityError as e:
            # Another trigger inserted the same provider subscription first.
            # A fresh transaction will find that row and take the update path.
            logger.warning(
                f"Lost insert race for {snapshot.id}; retrying as update",
                extra={"subscription_id": snapshot.id, "error": str(e.orig)},
            )

        try:
            return await self._reconcile_once(snapshot, plan_name)
        except IntegrityError as e:
            logger.error(
                f"Reconciliation of {snapshot.id} conflicted twice",
                extra={"subscription_id": snapshot.id},
            )
            raise ConflictError(
                f"Subscription {snapshot.id} could not be reconciled due to concurrent writes",
                subscription_id=snapshot.id,
            ) from e

    async def _reconcile_once(
        self, snapshot: SubscriptionSnapshot, plan_name: str
    ) -> ReconcileResult:
        async with self.session_factory() as session:
            async with session.begin():
                user = await UserDAO(session).get_by_provider_customer_id(snapshot.customer_id)
                if user is None:
                    logger.warning(
                        f"No user for customer {snapshot.customer_id}",
                        extra={
                            "customer_id": snapshot.customer_id,
                            "subscription_id": snapshot.id,
                        },
                    )
                    raise UserNotFoundError(
                        "No user is linked to this billing customer",
                        customer_id=snapshot.customer_id,
                    )

                plan_id = await PlanMaterializer(session, self.catalog).ensure_plan_exists(plan_name)
                subscription_dao = SubscriptionDAO(session)
                existing = await subscription_dao.get_by_provider_subscription_id(snapshot.id)

                if existing is not None:
                    subscription, reactivated = await self._apply_update(
                        session, existing, snapshot, plan_id
                    )
                    created = False
                    superseded = 0
                else:
                    subscription, superseded = await self._apply_create(
                        subscription_dao, user.id, snapshot, plan_id
                    )
                    created = True
                    reactivated = False

                tier = await apply_tier_for_status(session, user.id, snapshot.status, plan_name)

        logger.info(
            f"Reconciled subscription {snapshot.id}: "
            f"{'created' if created else 'updated'} status={snapshot.status.value} plan={plan_name}",
            extra={
                "subscription_id": snapshot.id,
                "user_id": subscription.user_id,
                "status": snapshot.status.value,
                "plan_name": plan_name,
                "created": created,
                "reactivated": reactivated,
                "superseded": superseded,
            },
        )
        return ReconcileResult(
            subscription=subscription,
            plan_name=plan_name,
            created=created,
            reactivated=reactivated,
            superseded=superseded,
            tier_applied=tier,
        )

    async def _apply_update(
        self,
        session: AsyncSession,
        existing: Subscription,
        snapshot: SubscriptionSnapshot,
        plan_id: int,
    ):
        """
        Overwrite an existing row from the snapshot.

        WHY: Fields are overwritten unconditionally (last writer wins by
        retrieval order). Only canceled_at is special: it is cleared when a
        pending cancellation is undone on a subscription that is still live,
        filled in when the subscription first becomes canceled, and otherwise
        left as recorded. A final CANCELED snapshot never counts as a
        reactivation, even when cancel_at_period_end has dropped back to false.
        """
        reactivated = (
            existing.cancel_at_period_end is True
            and snapshot.cancel_at_period_end is not True
            and snapshot.status != SubscriptionStatus.CANCELED
        )

        existing.status = snapshot.status
        existing.plan_id = plan_id
        existing.provider_customer_id = snapshot.customer_id
        existing.current_period_start = snapshot.current_period_start
        existing.current_period_end = snapshot.resolved_period_end(
            settings.SUBSCRIPTION_FALLBACK_PERIOD_DAYS
        )
        existing.cancel_at_period_end = snapshot.cancel_at_period_end
        existing.trial_start = snapshot.trial_start or existing.trial_start
        existing.trial_end = snapshot.trial_end or existing.trial_end

        if reactivated:
            existing.canceled_at = None
            logger.info(
                f"Subscription {snapshot.id} reactivated",
                extra={"subscription_id": snapshot.id},
            )
        elif existing.canceled_at is None and (
            snapshot.status == SubscriptionStatus.CANCELED or snapshot.canceled_at is not None
        ):
            existing.canceled_at = snapshot.canceled_at or utc_now()

        # Bump updated_at even when no column changed, so the row stays the
        # most recently confirmed one
        existing.updated_at = utc_now()
        await session.flush()
        return existing, reactivated

    async def _apply_create(
        self,
        subscription_dao: SubscriptionDAO,
        user_id: int,
        snapshot: SubscriptionSnapshot,
        plan_id: int,
    ):
        """
        Insert a row for a newly observed provider subscription.

        WHY: A new live subscription replaces whatever the user had, so the
        user's other open rows are superseded first. A snapshot that is
        itself CANCELED (a historical subscription seen late) is recorded
        without touching the user's current one.
        """
        now = utc_now()
        superseded = 0
        if snapshot.status != SubscriptionStatus.CANCELED:
            superseded = await subscription_dao.cancel_others_for_user(
                user_id=user_id,
                keep_provider_subscription_id=snapshot.id,
                canceled_at=now,
            )
            if superseded:
                logger.info(
                    f"Superseded {superseded} subscriptions of user {user_id}",
                    extra={"user_id": user_id, "subscription_id": snapshot.id},
                )

        canceled_at = snapshot.canceled_at
        if snapshot.status == SubscriptionStatus.CANCELED and canceled_at is None:
            canceled_at = now

        subscription = await subscription_dao.create(
            provider_subscription_id=snapshot.id,
            provider_customer_id=snapshot.customer_id,
            user_id=user_id,
            plan_id=plan_id,
            status=snapshot.status,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.resolved_period_end(
                settings.SUBSCRIPTION_FALLBACK_PERIOD_DAYS
            ),
            cancel_at_period_end=snapshot.cancel_at_period_end,
            canceled_at=canceled_at,
            trial_start=snapshot.trial_start,
            trial_end=snapshot.trial_end,
        )
        return subscription, superseded

    async def cancel_missing(self, user_id: int) -> int:
        """
        Mark every open row of a user CANCELED.

        WHAT: Used when the provider reports no subscriptions at all for the
        user's customer, so any local open row is stale.

        Returns:
            Number of rows canceled
        """
        now = utc_now()
        async with self.session_factory() as session:
            async with session.begin():
                rows = await SubscriptionDAO(session).list_open_for_user(user_id)
                for row in rows:
                    row.status = SubscriptionStatus.CANCELED
                    row.cancel_at_period_end = False
                    row.canceled_at = row.canceled_at or now

        if rows:
            logger.info(
                f"Canceled {len(rows)} subscriptions of user {user_id} missing at provider",
                extra={"user_id": user_id},
            )
        return len(rows)
