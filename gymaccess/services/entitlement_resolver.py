"""
Entitlement resolver: does this member have paid access right now?

CRITICAL DESIGN:
- The predicate is status=active AND payment_status=paid AND end_date > now
- end_date is re-checked on every read; a stale "active" status never grants
  access
- A stale active row is expired with a conditional update, so concurrent
  readers converge without locking
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gymaccess.models.base import utcnow
from gymaccess.models.membership import UserMembership
from gymaccess.repositories.base import run_unit_of_work
from gymaccess.repositories.membership_repository import MembershipRepository

logger = logging.getLogger(__name__)


@dataclass
class EntitlementStatus:
    """Server-authoritative view of a member's entitlement."""
    user_id: str
    has_access: bool
    checked_at: datetime
    membership_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    is_managed: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def cancellation_requested(self) -> bool:
        return self.cancelled_at is not None

    @property
    def access_until(self) -> Optional[datetime]:
        return self.end_date if self.has_access else None


class EntitlementResolver:
    """Reads and lazily corrects a member's current membership."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db_session
        self.clock = clock
        self.memberships = MembershipRepository(db_session)

    def _load_current(self, user_id: str, now: datetime) -> Optional[UserMembership]:
        membership = self.memberships.get_latest_for_user(user_id)
        if membership is None:
            return None

        if membership.is_stale_active(now):
            if self.memberships.expire_if_stale(membership.id, now):
                self.db.commit()
            else:
                self.db.rollback()
            membership = self.memberships.refresh(membership)

        return membership

    def has_valid_entitlement(self, user_id: str) -> bool:
        """
        Whether the user currently holds valid paid access.

        Raises:
            PersistenceError: If the store fails
        """
        def work():
            now = self.clock()
            membership = self._load_current(user_id, now)
            return membership is not None and membership.grants_access_at(now)

        return run_unit_of_work(self.db, "has_valid_entitlement", work)

    def get_status(self, user_id: str) -> EntitlementStatus:
        """Full entitlement view for the status endpoint."""
        def work():
            now = self.clock()
            membership = self._load_current(user_id, now)
            if membership is None:
                return EntitlementStatus(user_id=user_id, has_access=False, checked_at=now)

            return EntitlementStatus(
                user_id=user_id,
                has_access=membership.grants_access_at(now),
                checked_at=now,
                membership_id=membership.id,
                plan_id=membership.plan_id,
                status=membership.status,
                payment_status=membership.payment_status,
                payment_method=membership.normalized_payment_method,
                is_managed=membership.is_managed,
                start_date=membership.start_date,
                end_date=membership.end_date,
                cancelled_at=membership.cancelled_at,
            )

        return run_unit_of_work(self.db, "get_entitlement_status", work)
