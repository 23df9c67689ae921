"""
Unit tests for the membership reconciliation job.
"""

import pytest
from datetime import datetime, timedelta, timezone

from gymaccess.integrations.stripe.billing_client import StripeAPIError
from gymaccess.jobs.reconcile_memberships import (
    ReconciliationStats,
    expire_lapsed_memberships,
    run_reconciliation,
)
from gymaccess.models.membership import UserMembership
from gymaccess.services.subscription_reconciler import ReconciliationOutcome

NEXT_PERIOD_END = datetime(2025, 3, 2, 12, 0, tzinfo=timezone.utc)


def _status(db_session, membership_id):
    db_session.expire_all()
    return db_session.get(UserMembership, membership_id).status


class TestReconciliationStats:

    def test_counts_outcomes(self, clock):
        stats = ReconciliationStats(clock)
        for outcome in (
            ReconciliationOutcome.UPDATED,
            ReconciliationOutcome.UNCHANGED,
            ReconciliationOutcome.NOT_FOUND,
            ReconciliationOutcome.RETRYABLE,
        ):
            stats.record(outcome)
        clock.advance(seconds=4)

        result = stats.to_dict()

        assert result["memberships_checked"] == 4
        assert result["memberships_updated"] == 1
        assert result["not_found"] == 1
        assert result["errors"] == 1
        assert result["duration_seconds"] == 4.0


class TestRunReconciliation:

    @pytest.mark.asyncio
    async def test_polls_only_managed_memberships(
        self, db_session, clock, billing_client, make_membership, make_subscription
    ):
        managed = make_membership(
            user_id="user-1", payment_method="managed_subscription", external_subscription_ref="sub_123"
        )
        make_membership(user_id="user-2", payment_method="cash")
        billing_client.get_subscription.return_value = make_subscription(current_period_end=NEXT_PERIOD_END)

        result = await run_reconciliation(
            session=db_session, billing_client=billing_client, clock=clock, delay_seconds=0
        )

        billing_client.get_subscription.assert_awaited_once_with("sub_123")
        assert result["memberships_checked"] == 1
        assert result["memberships_updated"] == 1
        db_session.expire_all()
        assert db_session.get(UserMembership, managed.id).end_date == NEXT_PERIOD_END

    @pytest.mark.asyncio
    async def test_processor_errors_are_counted_not_raised(
        self, db_session, clock, billing_client, make_membership
    ):
        make_membership(payment_method="managed_subscription", external_subscription_ref="sub_123")
        billing_client.get_subscription.side_effect = StripeAPIError("down", status_code=503)

        result = await run_reconciliation(
            session=db_session, billing_client=billing_client, clock=clock, delay_seconds=0
        )

        assert result["errors"] == 1
        assert result["memberships_updated"] == 0

    @pytest.mark.asyncio
    async def test_lapsed_memberships_expired(self, db_session, clock, billing_client, make_membership):
        lapsed = make_membership(user_id="user-3", end_date=clock() - timedelta(days=1))
        current = make_membership(user_id="user-4")

        result = await run_reconciliation(
            session=db_session, billing_client=billing_client, clock=clock, delay_seconds=0
        )

        assert result["expired"] == 1
        assert _status(db_session, lapsed.id) == "expired"
        assert _status(db_session, current.id) == "active"

    @pytest.mark.asyncio
    async def test_respects_max_records(self, db_session, clock, billing_client, make_membership):
        for index in range(3):
            make_membership(
                user_id=f"user-{index}",
                payment_method="managed_subscription",
                external_subscription_ref=f"sub_{index}",
            )

        result = await run_reconciliation(
            session=db_session, billing_client=billing_client, clock=clock,
            max_records=2, delay_seconds=0
        )

        assert result["memberships_checked"] == 2
        assert result["not_found"] == 2


def test_expire_lapsed_memberships_is_idempotent(db_session, clock, make_membership):
    make_membership(end_date=clock() - timedelta(minutes=1))

    assert expire_lapsed_memberships(db_session, clock()) == 1
    assert expire_lapsed_memberships(db_session, clock()) == 0
