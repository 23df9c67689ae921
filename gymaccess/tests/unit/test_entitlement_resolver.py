"""
Unit tests for EntitlementResolver.

Covers the access predicate, lazy expiry and monotonic loss of access.
"""

import pytest
from datetime import datetime, timedelta, timezone

from gymaccess.models.membership import UserMembership
from gymaccess.services.entitlement_resolver import EntitlementResolver


class TestHasValidEntitlement:

    def test_no_membership(self, db_session, clock):
        resolver = EntitlementResolver(db_session, clock)
        assert resolver.has_valid_entitlement("user-1") is False

    def test_active_paid_membership(self, db_session, clock, make_membership):
        make_membership()
        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is True

    def test_pending_payment_has_no_access(self, db_session, clock, make_membership):
        make_membership(payment_status="pending")
        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is False

    def test_expired_end_date_denied_even_if_status_active(self, db_session, clock, make_membership):
        membership = make_membership(end_date=clock() - timedelta(seconds=1))

        resolver = EntitlementResolver(db_session, clock)
        assert resolver.has_valid_entitlement("user-1") is False

        db_session.expire_all()
        stored = db_session.get(UserMembership, membership.id)
        assert stored.status == "expired"

    def test_end_date_equal_to_now_denied(self, db_session, clock, make_membership):
        make_membership(end_date=clock())
        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is False

    def test_cancellation_request_keeps_access_until_end(self, db_session, clock, make_membership):
        make_membership(cancelled_at=clock())
        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is True

    def test_cancelled_status_has_no_access(self, db_session, clock, make_membership):
        make_membership(status="cancelled", cancelled_at=clock())
        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is False

    def test_access_lost_at_end_date_and_stays_lost(self, db_session, clock, make_membership):
        membership = make_membership()
        resolver = EntitlementResolver(db_session, clock)

        clock.set(membership.end_date - timedelta(minutes=1))
        assert resolver.has_valid_entitlement("user-1") is True

        clock.set(membership.end_date)
        assert resolver.has_valid_entitlement("user-1") is False

        for days in (1, 5, 30):
            clock.set(membership.end_date + timedelta(days=days))
            assert resolver.has_valid_entitlement("user-1") is False

    def test_other_users_membership_ignored(self, db_session, clock, make_membership):
        make_membership(user_id="someone-else")
        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is False

    def test_latest_membership_wins(self, db_session, clock, make_membership):
        old_start = datetime(2024, 11, 1, tzinfo=timezone.utc)
        make_membership(status="expired", start_date=old_start, end_date=old_start + timedelta(days=30))
        make_membership()

        assert EntitlementResolver(db_session, clock).has_valid_entitlement("user-1") is True


class TestGetStatus:

    def test_status_without_membership(self, db_session, clock):
        status = EntitlementResolver(db_session, clock).get_status("user-1")

        assert status.has_access is False
        assert status.membership_id is None
        assert status.access_until is None
        assert status.checked_at == clock()

    def test_status_fields(self, db_session, clock, make_membership):
        membership = make_membership(payment_method=" Cash ", cancelled_at=clock())

        status = EntitlementResolver(db_session, clock).get_status("user-1")

        assert status.has_access is True
        assert status.membership_id == membership.id
        assert status.payment_method == "cash"
        assert status.is_managed is False
        assert status.cancellation_requested is True
        assert status.access_until == membership.end_date

    def test_legacy_row_with_reference_is_managed(self, db_session, clock, make_membership):
        make_membership(payment_method=None, external_subscription_ref="sub_legacy")

        status = EntitlementResolver(db_session, clock).get_status("user-1")

        assert status.is_managed is True
        assert status.payment_method is None

    def test_status_reflects_lazy_expiry(self, db_session, clock, make_membership):
        make_membership()
        clock.advance(days=30)

        status = EntitlementResolver(db_session, clock).get_status("user-1")

        assert status.has_access is False
        assert status.status == "expired"
