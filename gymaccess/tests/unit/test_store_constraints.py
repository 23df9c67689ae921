"""
Unit tests for the uniqueness guarantees held by the store itself.

The services check for an open session or an active membership before
writing, but concurrent requests can both pass those checks. These tests
write rows directly, and stub the pre-checks away, to show the partial
unique indexes reject the second row and the services map the rejection
to their domain errors.
"""

import pytest
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from gymaccess.errors import DuplicateSessionError, MembershipConflictError
from gymaccess.models.check_in import CheckInSession
from gymaccess.models.membership import UserMembership
from gymaccess.repositories.check_in_repository import CheckInRepository
from gymaccess.services.access_tracker import AccessTracker
from gymaccess.services.membership_service import MembershipService

INSIDE = (51.4881, -0.0300)


def _active_rows(db_session, user_id="user-1"):
    db_session.expire_all()
    return db_session.query(UserMembership).filter(
        UserMembership.user_id == user_id,
        UserMembership.status == "active",
    ).count()


class TestOpenSessionIndex:

    def test_second_open_session_rejected(self, db_session, clock):
        db_session.add(CheckInSession(user_id="user-1", check_in_time=clock(), location="51.4881,-0.03"))
        db_session.commit()

        db_session.add(CheckInSession(
            user_id="user-1", check_in_time=clock() + timedelta(minutes=1), location="51.4881,-0.03"
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

        assert CheckInRepository(db_session).count_open_sessions("user-1") == 1

    def test_closed_sessions_do_not_count(self, db_session, clock):
        for hours in (1, 2):
            start = clock() - timedelta(hours=hours * 3)
            db_session.add(CheckInSession(
                user_id="user-1", check_in_time=start, check_out_time=start + timedelta(hours=1)
            ))
        db_session.add(CheckInSession(user_id="user-1", check_in_time=clock()))
        db_session.commit()

        assert CheckInRepository(db_session).count_open_sessions("user-1") == 1

    def test_other_members_unaffected(self, db_session, clock):
        db_session.add(CheckInSession(user_id="user-1", check_in_time=clock()))
        db_session.add(CheckInSession(user_id="user-2", check_in_time=clock()))
        db_session.commit()

        assert CheckInRepository(db_session).count_open_sessions("user-2") == 1

    def test_racing_check_in_maps_to_duplicate_session(
        self, db_session, access_config, clock, make_membership, monkeypatch
    ):
        make_membership()
        tracker = AccessTracker(db_session, access_config, clock)
        tracker.check_in("user-1", *INSIDE)

        # The other request read "no open session" before this one committed
        monkeypatch.setattr(tracker.check_ins, "get_open_session", lambda user_id, for_update=False: None)

        with pytest.raises(DuplicateSessionError):
            tracker.check_in("user-1", *INSIDE)

        assert CheckInRepository(db_session).count_open_sessions("user-1") == 1


class TestActiveMembershipIndex:

    def test_second_active_membership_rejected(self, db_session, make_membership, plan, clock):
        make_membership()

        db_session.add(UserMembership(
            user_id="user-1",
            plan_id=plan.id,
            payment_method="card",
            status="active",
            payment_status="paid",
            start_date=clock(),
            end_date=clock() + timedelta(days=30),
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

        assert _active_rows(db_session) == 1

    def test_expired_history_allowed(self, db_session, make_membership, clock):
        make_membership(
            status="expired",
            start_date=clock() - timedelta(days=60),
            end_date=clock() - timedelta(days=30),
        )
        make_membership()

        assert _active_rows(db_session) == 1

    def test_subscription_reference_is_unique(self, db_session, make_membership, clock):
        make_membership(
            payment_method="managed_subscription",
            external_subscription_ref="sub_123",
            status="expired",
            start_date=clock() - timedelta(days=60),
            end_date=clock() - timedelta(days=30),
        )

        with pytest.raises(IntegrityError):
            make_membership(payment_method="managed_subscription", external_subscription_ref="sub_123")
        db_session.rollback()

    def test_racing_assignment_maps_to_conflict(
        self, db_session, access_config, clock, make_membership, plan, monkeypatch
    ):
        make_membership()
        service = MembershipService(db_session, access_config, clock)

        # The other request read "no active membership" before this one committed
        monkeypatch.setattr(service.memberships, "get_active_for_user", lambda user_id, for_update=False: None)

        with pytest.raises(MembershipConflictError):
            service.assign_membership("user-1", plan.id, "card")

        assert _active_rows(db_session) == 1
