"""
Reconciliation Sweep.

WHAT: Periodically re-derives every billing customer's subscription from
the provider and reconciles it locally.

WHY: Webhooks get lost (endpoint down, misconfigured secret, processing
errors), and users don't always come back from checkout. The sweep is the
backstop that makes local state converge anyway.

HOW:
1. Load every user linked to a provider customer
2. Sync each customer through SubscriptionSync, at most
   RECONCILIATION_SWEEP_CONCURRENCY at a time
3. Collect per-customer failures into the report instead of aborting;
   transient provider failures are marked retryable and are picked up by
   the next scheduled run
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from entitlement_engine.core.config import settings
from entitlement_engine.core.exceptions import TransientProviderError
from entitlement_engine.dao.user import UserDAO
from entitlement_engine.db.session import get_session_factory
from entitlement_engine.services.billing_triggers import SubscriptionSync
from entitlement_engine.services.reconciler import SubscriptionReconciler
from entitlement_engine.services.stripe_gateway import StripeGateway, get_stripe_gateway


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepError:
    customer_id: str
    user_id: int
    error: str
    retryable: bool


@dataclass
class SweepReport:
    """Summary of one sweep run."""

    checked: int = 0
    reconciled: int = 0
    canceled: int = 0
    errors: List[SweepError] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "reconciled": self.reconciled,
            "canceled": self.canceled,
            "errors": [
                {
                    "customer_id": error.customer_id,
                    "user_id": error.user_id,
                    "error": error.error,
                    "retryable": error.retryable,
                }
                for error in self.errors
            ],
        }


class ReconciliationSweep:
    """
    Drift repair across all billing customers.

    Example:
        sweep = ReconciliationSweep(AsyncSessionLocal, StripeGateway())
        report = await sweep.run()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: Optional[StripeGateway] = None,
        reconciler: Optional[SubscriptionReconciler] = None,
        concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.sync = SubscriptionSync(
            session_factory,
            reconciler=reconciler or SubscriptionReconciler(session_factory),
            gateway=gateway or get_stripe_gateway(),
        )
        self.concurrency = max(1, concurrency or settings.RECONCILIATION_SWEEP_CONCURRENCY)

    async def run(self) -> SweepReport:
        """
        Sweep every billing customer once.

        Returns:
            SweepReport; never raises for per-customer failures
        """
        async with self.session_factory() as session:
            users = await UserDAO(session).list_billable_customers()
            customers = [(user.id, user.provider_customer_id) for user in users]

        logger.info(f"Reconciliation sweep started for {len(customers)} customers")

        report = SweepReport()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def sweep_one(user_id: int, customer_id: str) -> None:
            async with semaphore:
                report.checked += 1
                try:
                    outcome = await self.sync.sync_customer(user_id, customer_id)
                except Exception as e:
                    retryable = isinstance(e, TransientProviderError)
                    logger.warning(
                        f"Sweep failed for customer {customer_id}: {e}",
                        extra={
                            "user_id": user_id,
                            "customer_id": customer_id,
                            "retryable": retryable,
                        },
                        exc_info=not retryable,
                    )
                    report.errors.append(
                        SweepError(
                            customer_id=customer_id,
                            user_id=user_id,
                            error=f"{type(e).__name__}: {e}",
                            retryable=retryable,
                        )
                    )
                    return

                if outcome.action == "reconciled":
                    report.reconciled += 1
                elif outcome.action == "canceled_missing":
                    report.canceled += outcome.canceled

        await asyncio.gather(*(sweep_one(user_id, customer_id) for user_id, customer_id in customers))

        logger.info(
            f"Reconciliation sweep finished: checked={report.checked} "
            f"reconciled={report.reconciled} canceled={report.canceled} errors={len(report.errors)}",
            extra={
                "checked": report.checked,
                "reconciled": report.reconciled,
                "canceled": report.canceled,
                "error_count": len(report.errors),
            },
        )
        return report


# Singleton sweep
_reconciliation_sweep: Optional[ReconciliationSweep] = None


def get_reconciliation_sweep() -> ReconciliationSweep:
    """Get or create the sweep bound to the application session factory."""
    global _reconciliation_sweep
    if _reconciliation_sweep is None:
        _reconciliation_sweep = ReconciliationSweep(get_session_factory())
    return _reconciliation_sweep
