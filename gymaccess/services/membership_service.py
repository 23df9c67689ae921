"""
Membership record creation.

Used by admin assignment (cash, card, staff ...) and by the subscription
reconciler when a confirmed processor subscription has no local record.

CRITICAL: A user never holds two active memberships. Stale active rows are
expired first, then the partial unique index is the final arbiter for
concurrent inserts.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gymaccess.config.access_control import AccessControlConfig, get_access_control_config
from gymaccess.errors import MembershipConflictError, PlanNotFoundError
from gymaccess.models.base import utcnow
from gymaccess.models.membership import (
    UserMembership,
    MembershipStatus,
    PaymentMethod,
    PaymentStatus,
    normalize_payment_method,
)
from gymaccess.repositories.base import run_unit_of_work
from gymaccess.repositories.membership_repository import MembershipRepository
from gymaccess.repositories.plans_repository import PlansRepository
from gymaccess.services.membership_dates import compute_end_date

logger = logging.getLogger(__name__)

_VALID_METHODS = {m.value for m in PaymentMethod}


class MembershipService:
    """Creates membership records under the one-active-per-user rule."""

    def __init__(
        self,
        db_session: Session,
        config: Optional[AccessControlConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.config = config or get_access_control_config()
        self.clock = clock
        self.memberships = MembershipRepository(db_session)
        self.plans = PlansRepository(db_session)

    def insert_membership(
        self,
        user_id: str,
        plan_id: str,
        payment_method: str,
        payment_status: str = PaymentStatus.PAID.value,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        external_subscription_ref: Optional[str] = None,
        processor_synced_at: Optional[datetime] = None,
    ) -> UserMembership:
        """
        Insert a membership inside the caller's transaction (flush only).

        Args:
            user_id: Member
            plan_id: Plan the membership is for
            payment_method: One of PaymentMethod; fixed for the record's life
            payment_status: Initial payment state
            start_date: Defaults to now
            end_date: Defaults to the configured end-date policy
            external_subscription_ref: Processor subscription id (managed only)
            processor_synced_at: Processor timestamp the row reflects

        Returns:
            The new membership

        Raises:
            ValueError: Unknown payment method or end_date before start_date
            PlanNotFoundError: Plan does not exist
            MembershipConflictError: User already has an active membership
            IntegrityError: Concurrent insert won the race (caller maps it)
        """
        method = normalize_payment_method(payment_method)
        if method not in _VALID_METHODS:
            raise ValueError(f"Unknown payment method: {payment_method!r}")

        plan = self.plans.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError()

        now = self.clock()
        start = start_date or now
        end = end_date or compute_end_date(start, plan.duration_days, self.config.end_date_policy)
        if end < start:
            raise ValueError("end_date must not be before start_date")

        self.memberships.expire_stale_for_user(user_id, now)
        existing = self.memberships.get_active_for_user(user_id)
        if existing is not None:
            logger.info("Membership creation rejected, active membership exists", extra={
                "user_id": user_id,
                "existing_membership_id": existing.id,
            })
            raise MembershipConflictError()

        membership = UserMembership(
            user_id=user_id,
            plan_id=plan.id,
            start_date=start,
            end_date=end,
            status=MembershipStatus.ACTIVE.value,
            payment_status=payment_status,
            payment_method=method,
            external_subscription_ref=external_subscription_ref,
            processor_synced_at=processor_synced_at,
        )
        return self.memberships.create(membership)

    def assign_membership(
        self,
        user_id: str,
        plan_id: str,
        payment_method: str,
        payment_status: str = PaymentStatus.PAID.value,
        start_date: Optional[datetime] = None,
    ) -> UserMembership:
        """
        Assign a plan to a member in its own transaction.

        Raises:
            PlanNotFoundError, MembershipConflictError, PersistenceError
        """
        def work():
            try:
                membership = self.insert_membership(
                    user_id=user_id,
                    plan_id=plan_id,
                    payment_method=payment_method,
                    payment_status=payment_status,
                    start_date=start_date,
                )
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise MembershipConflictError(cause=e) from e
            except (PlanNotFoundError, MembershipConflictError, ValueError):
                self.db.rollback()
                raise
            return membership

        return run_unit_of_work(self.db, "assign_membership", work)
