"""
Membership reconciliation job.

Polls the payment processor for every active managed membership so local
state stays accurate even when lifecycle events are missed, then expires
memberships whose end_date has passed.

Usage:
    python -m gymaccess.jobs.reconcile_memberships
"""

import sys
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gymaccess.models.base import utcnow
from gymaccess.models.membership import UserMembership, MembershipStatus

logger = logging.getLogger(__name__)

# Maximum memberships to check per run (processor rate limits)
MAX_RECORDS_PER_RUN = 200

# Pause between processor calls
DELAY_BETWEEN_RECORDS_SECONDS = 0.2


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.memberships_checked = 0
        self.memberships_updated = 0
        self.memberships_created = 0
        self.not_found = 0
        self.skipped = 0
        self.expired = 0
        self.errors = 0
        self.start_time = clock()

    def record(self, outcome) -> None:
        from gymaccess.services.subscription_reconciler import ReconciliationOutcome

        self.memberships_checked += 1
        if outcome == ReconciliationOutcome.UPDATED:
            self.memberships_updated += 1
        elif outcome == ReconciliationOutcome.CREATED:
            self.memberships_created += 1
        elif outcome == ReconciliationOutcome.NOT_FOUND:
            self.not_found += 1
        elif outcome == ReconciliationOutcome.RETRYABLE:
            self.errors += 1
        elif outcome == ReconciliationOutcome.SKIPPED:
            self.skipped += 1

    def to_dict(self) -> dict:
        duration = (self.clock() - self.start_time).total_seconds()
        return {
            "memberships_checked": self.memberships_checked,
            "memberships_updated": self.memberships_updated,
            "memberships_created": self.memberships_created,
            "not_found": self.not_found,
            "skipped": self.skipped,
            "expired": self.expired,
            "errors": self.errors,
            "duration_seconds": duration
        }


def expire_lapsed_memberships(session: Session, now: datetime) -> int:
    """
    Expire every active membership whose end_date has passed.

    Same conditional transition as the resolver's lazy expiry, applied in bulk.
    """
    count = session.query(UserMembership).filter(
        UserMembership.status == MembershipStatus.ACTIVE.value,
        UserMembership.end_date <= now
    ).update(
        {
            UserMembership.status: MembershipStatus.EXPIRED.value,
            UserMembership.updated_at: now,
        },
        synchronize_session=False
    )
    session.commit()

    if count:
        logger.info("Expired lapsed memberships", extra={"count": count})
    return count


async def run_reconciliation(
    session: Optional[Session] = None,
    billing_client=None,
    clock: Callable[[], datetime] = utcnow,
    max_records: int = MAX_RECORDS_PER_RUN,
    delay_seconds: float = DELAY_BETWEEN_RECORDS_SECONDS,
) -> dict:
    """
    Run the membership reconciliation job.

    Args:
        session: Database session (created from DATABASE_URL if omitted)
        billing_client: Stripe client (created from STRIPE_SECRET_KEY if omitted)
        clock: Current time source
        max_records: Upper bound on memberships polled this run
        delay_seconds: Pause between processor calls

    Returns:
        Statistics dictionary with job results
    """
    from gymaccess.database.session import get_session_factory
    from gymaccess.integrations.stripe.billing_client import get_billing_client
    from gymaccess.repositories.membership_repository import MembershipRepository
    from gymaccess.services.subscription_reconciler import SubscriptionReconciler

    logger.info("Starting membership reconciliation job")

    stats = ReconciliationStats(clock)
    owns_session = session is None
    owns_client = billing_client is None

    if owns_session:
        session = get_session_factory()()
    if owns_client:
        billing_client = get_billing_client()

    try:
        memberships = MembershipRepository(session).get_active_managed(limit=max_records)
        logger.info("Found memberships to reconcile", extra={
            "membership_count": len(memberships)
        })

        reconciler = SubscriptionReconciler(session, billing_client, clock=clock)
        for membership in memberships:
            result = await reconciler.reconcile_record(membership)
            stats.record(result.outcome)

            if delay_seconds:
                await asyncio.sleep(delay_seconds)

        stats.expired = expire_lapsed_memberships(session, clock())

        result = stats.to_dict()
        logger.info("Reconciliation job completed", extra=result)
        return result

    except Exception as e:
        logger.error("Reconciliation job failed", extra={
            "error": str(e)
        })
        raise
    finally:
        if owns_client:
            await billing_client.close()
        if owns_session:
            session.close()


def main():
    """Entry point for running reconciliation job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = asyncio.run(run_reconciliation())
        print(f"Reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
