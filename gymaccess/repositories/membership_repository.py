"""
Membership repository for data access operations.

Encapsulates all database operations for user memberships with:
- Conditional (compare-and-set) updates for every state transition
- Row locks where a read precedes a write
- Consistent "most recent record" ordering
- Reads of current records reload from the store (populate_existing),
  since conditional updates bypass the identity map
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import func, literal, or_
from sqlalchemy.orm import Session

from gymaccess.models.base import UTCDateTime
from gymaccess.models.membership import (
    UserMembership,
    MembershipStatus,
    PaymentMethod,
)

logger = logging.getLogger(__name__)


class MembershipRepository:
    """
    Repository for user membership data access.

    Writes never commit; the calling service owns the transaction.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_id(self, membership_id: str) -> Optional[UserMembership]:
        return self.db.query(UserMembership).filter(
            UserMembership.id == membership_id
        ).first()

    def get_latest_for_user(self, user_id: str) -> Optional[UserMembership]:
        """
        Get the user's most recent membership regardless of status.

        Most recent means latest start_date, ties broken by created_at.
        """
        return self.db.query(UserMembership).populate_existing().filter(
            UserMembership.user_id == user_id
        ).order_by(
            UserMembership.start_date.desc(),
            UserMembership.created_at.desc()
        ).first()

    def get_active_for_user(
        self,
        user_id: str,
        for_update: bool = False
    ) -> Optional[UserMembership]:
        """
        Get the user's record stored with status=active.

        The stored status may be stale; callers re-check end_date.

        Args:
            user_id: User identifier
            for_update: Take a row lock (SELECT ... FOR UPDATE)

        Returns:
            Active membership if found, None otherwise
        """
        query = self.db.query(UserMembership).populate_existing().filter(
            UserMembership.user_id == user_id,
            UserMembership.status == MembershipStatus.ACTIVE.value
        ).order_by(
            UserMembership.start_date.desc(),
            UserMembership.created_at.desc()
        )

        if for_update:
            query = query.with_for_update()

        return query.first()

    def get_by_subscription_ref(self, subscription_ref: str) -> Optional[UserMembership]:
        """Get the membership linked to a processor subscription."""
        return self.db.query(UserMembership).populate_existing().filter(
            UserMembership.external_subscription_ref == subscription_ref
        ).first()

    def get_active_managed(self, limit: int = 100, offset: int = 0) -> List[UserMembership]:
        """
        Get active memberships billed by the processor.

        Used by the reconciliation job. Legacy rows with no payment_method
        but a subscription reference are included.
        """
        return self.db.query(UserMembership).filter(
            UserMembership.status == MembershipStatus.ACTIVE.value,
            UserMembership.external_subscription_ref.isnot(None),
            or_(
                UserMembership.payment_method.is_(None),
                func.lower(func.trim(UserMembership.payment_method)) == "",
                func.lower(func.trim(UserMembership.payment_method))
                == PaymentMethod.MANAGED_SUBSCRIPTION.value,
            )
        ).order_by(
            UserMembership.end_date.asc()
        ).offset(offset).limit(limit).all()

    def create(self, membership: UserMembership) -> UserMembership:
        """
        Insert a new membership.

        Raises IntegrityError if the one-active-per-user index rejects it.
        """
        self.db.add(membership)
        self.db.flush()

        logger.info("Membership created", extra={
            "membership_id": membership.id,
            "user_id": membership.user_id,
            "plan_id": membership.plan_id,
            "payment_method": membership.payment_method,
        })

        return membership

    def expire_if_stale(self, membership_id: str, now: datetime) -> bool:
        """
        Lazily expire an active record whose end_date has passed.

        Conditional update; safe to race with other readers.

        Returns:
            True if this call performed the transition
        """
        updated = self.db.query(UserMembership).filter(
            UserMembership.id == membership_id,
            UserMembership.status == MembershipStatus.ACTIVE.value,
            UserMembership.end_date <= now
        ).update(
            {
                UserMembership.status: MembershipStatus.EXPIRED.value,
                UserMembership.updated_at: now,
            },
            synchronize_session=False
        )

        if updated:
            logger.info("Membership lazily expired", extra={
                "membership_id": membership_id,
            })

        return updated > 0

    def expire_stale_for_user(self, user_id: str, now: datetime) -> int:
        """Expire every stale active record of a user. Returns rows changed."""
        return self.db.query(UserMembership).filter(
            UserMembership.user_id == user_id,
            UserMembership.status == MembershipStatus.ACTIVE.value,
            UserMembership.end_date <= now
        ).update(
            {
                UserMembership.status: MembershipStatus.EXPIRED.value,
                UserMembership.updated_at: now,
            },
            synchronize_session=False
        )

    def mark_cancellation_requested(
        self,
        membership_id: str,
        now: datetime,
        subscription_ref: Optional[str] = None
    ) -> bool:
        """
        Record a cancellation request without changing status or end_date.

        Only the first request takes effect. A missing subscription
        reference is backfilled when one is supplied.

        Returns:
            True if cancelled_at was set by this call
        """
        values = {
            UserMembership.cancelled_at: now,
            UserMembership.updated_at: now,
        }
        if subscription_ref:
            values[UserMembership.external_subscription_ref] = func.coalesce(
                UserMembership.external_subscription_ref, subscription_ref
            )

        updated = self.db.query(UserMembership).filter(
            UserMembership.id == membership_id,
            UserMembership.status == MembershipStatus.ACTIVE.value,
            UserMembership.cancelled_at.is_(None)
        ).update(values, synchronize_session=False)

        return updated > 0

    def backfill_subscription_ref(self, membership_id: str, subscription_ref: str, now: datetime) -> bool:
        """Store a subscription reference on a row that has none."""
        updated = self.db.query(UserMembership).filter(
            UserMembership.id == membership_id,
            UserMembership.external_subscription_ref.is_(None)
        ).update(
            {
                UserMembership.external_subscription_ref: subscription_ref,
                UserMembership.updated_at: now,
            },
            synchronize_session=False
        )
        return updated > 0

    def mark_cancelled_immediately(self, membership_id: str, now: datetime) -> bool:
        """Legacy cancellation: end the membership now."""
        updated = self.db.query(UserMembership).filter(
            UserMembership.id == membership_id,
            UserMembership.status == MembershipStatus.ACTIVE.value
        ).update(
            {
                UserMembership.status: MembershipStatus.CANCELLED.value,
                UserMembership.cancelled_at: func.coalesce(
                    UserMembership.cancelled_at, literal(now, UTCDateTime())
                ),
                UserMembership.updated_at: now,
            },
            synchronize_session=False
        )
        return updated > 0

    def apply_processor_state(
        self,
        membership_id: str,
        values: dict,
        synced_at: datetime
    ) -> bool:
        """
        Apply processor-derived fields if they are not older than what is stored.

        Updates carrying a processor timestamp older than processor_synced_at
        are dropped, so late or duplicate deliveries cannot roll state back.

        Args:
            membership_id: Membership to update
            values: Column name -> new value
            synced_at: Processor timestamp of the state being applied

        Returns:
            True if the update was applied
        """
        update_values = {getattr(UserMembership, name): value for name, value in values.items()}
        update_values[UserMembership.processor_synced_at] = synced_at

        updated = self.db.query(UserMembership).filter(
            UserMembership.id == membership_id,
            or_(
                UserMembership.processor_synced_at.is_(None),
                UserMembership.processor_synced_at <= synced_at
            )
        ).update(update_values, synchronize_session=False)

        if updated:
            logger.info("Processor state applied to membership", extra={
                "membership_id": membership_id,
                "fields": sorted(values.keys()),
            })
        else:
            logger.info("Stale processor state ignored", extra={
                "membership_id": membership_id,
                "synced_at": synced_at.isoformat(),
            })

        return updated > 0

    def refresh(self, membership: UserMembership) -> UserMembership:
        """Reload a membership after a bulk conditional update."""
        self.db.refresh(membership)
        return membership
