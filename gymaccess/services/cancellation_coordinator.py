"""
Cancellation coordinator.

States:
    Active -> ActivePendingCancellation (status=active, cancelled_at set)
           -> Expired (lazy expiry at end_date, or renewal failure)

CRITICAL DESIGN:
- Whether the processor is involved is decided ONLY by the stored
  payment_method (see UserMembership.is_managed). Processor lookups never
  turn a cash/card/staff membership into a managed one.
- Managed subscriptions are cancelled at period end, never immediately;
  end_date and status are left alone.
- If the processor is needed and unavailable, nothing is written.
- A repeated request for a managed membership is re-sent to the processor
  until the subscription is scheduled to end; the first cancelled_at stays.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gymaccess.auth.identity import AuthenticatedUser
from gymaccess.config.access_control import (
    AccessControlConfig,
    GracePeriodPolicy,
    get_access_control_config,
)
from gymaccess.errors import NoActiveMembershipError, ProcessorUnavailableError
from gymaccess.models.base import utcnow
from gymaccess.models.membership import UserMembership
from gymaccess.repositories.base import run_unit_of_work
from gymaccess.repositories.membership_repository import MembershipRepository
from gymaccess.services.processor_boundary import call_processor, require_client
from gymaccess.services.subscription_lookup import SubscriptionLocator

logger = logging.getLogger(__name__)


class CancellationEffect(str, Enum):
    GRACE_PERIOD = "grace_period"   # Access continues until end_date
    IMMEDIATE = "immediate"         # Access ended now


@dataclass
class CancellationResult:
    membership_id: str
    effect: CancellationEffect
    managed: bool
    cancelled_at: Optional[datetime]
    access_until: Optional[datetime]
    already_requested: bool = False
    degraded: bool = False
    subscription_ref: Optional[str] = None


class CancellationCoordinator:
    """
    Applies a member's cancellation request.

    Args:
        db_session: Request-scoped database session
        billing_client: StripeBillingClient, or None when not configured
        config: Access control config (grace_period_policy)
        clock: Current time source
    """

    def __init__(
        self,
        db_session: Session,
        billing_client=None,
        config: Optional[AccessControlConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.client = billing_client
        self.config = config or get_access_control_config()
        self.clock = clock
        self.memberships = MembershipRepository(db_session)

    async def cancel(self, user: AuthenticatedUser) -> CancellationResult:
        """
        Cancel the member's current membership.

        Raises:
            NoActiveMembershipError: Nothing active to cancel
            ProcessorUnavailableError: Processor needed but unavailable
            PersistenceError: If the store fails
        """
        now = self.clock()
        membership = run_unit_of_work(
            self.db, "load_membership_for_cancel", lambda: self._load_active(user.user_id, now)
        )
        if membership is None:
            raise NoActiveMembershipError()

        if membership.cancelled_at is not None and not membership.is_managed:
            logger.info("Cancellation already requested", extra={
                "membership_id": membership.id,
                "user_id": user.user_id,
            })
            self.db.rollback()
            return self._result(membership, membership.cancelled_at, already_requested=True)

        if not membership.is_managed:
            return self._cancel_locally(membership, now)

        # A managed repeat still goes to the processor: an earlier request may
        # have been recorded locally while the subscription could not be found.
        try:
            subscription_ref, degraded = await self._cancel_at_processor(user, membership)
        except ProcessorUnavailableError:
            self.db.rollback()
            raise

        return self._record_request(membership, now, subscription_ref, degraded)

    def _load_active(self, user_id: str, now: datetime) -> Optional[UserMembership]:
        """Most recent active record under a row lock; stale rows are expired."""
        membership = self.memberships.get_active_for_user(user_id, for_update=True)
        if membership is None:
            return None

        if membership.is_stale_active(now):
            self.memberships.expire_if_stale(membership.id, now)
            self.db.commit()
            return None

        return membership

    def _cancel_locally(self, membership: UserMembership, now: datetime) -> CancellationResult:
        """Non-managed membership: no processor call, ever."""
        if self.config.grace_period_policy == GracePeriodPolicy.IMMEDIATE:
            def work():
                changed = self.memberships.mark_cancelled_immediately(membership.id, now)
                self.db.commit()
                return changed

            changed = run_unit_of_work(self.db, "cancel_membership_immediately", work)
            logger.info("Membership cancelled immediately", extra={
                "membership_id": membership.id,
                "user_id": membership.user_id,
                "payment_method": membership.normalized_payment_method,
            })
            return CancellationResult(
                membership_id=membership.id,
                effect=CancellationEffect.IMMEDIATE,
                managed=False,
                cancelled_at=now,
                access_until=None,
                already_requested=not changed,
            )

        return self._record_request(membership, now, subscription_ref=None, degraded=False)

    async def _cancel_at_processor(self, user: AuthenticatedUser, membership: UserMembership):
        """
        Schedule cancel_at_period_end for the member's subscription.

        Returns:
            (subscription id or None, degraded flag)
        """
        client = require_client(self.client, "cancel_at_period_end")

        subscription = await SubscriptionLocator(client).find(
            user_id=user.user_id,
            email=user.email,
            email_verified=user.email_verified,
            subscription_ref=membership.external_subscription_ref,
            live_only=True,
        )

        if subscription is None:
            logger.warning("Reconciliation gap: managed membership has no processor subscription", extra={
                "membership_id": membership.id,
                "user_id": user.user_id,
                "subscription_ref": membership.external_subscription_ref,
            })
            return None, True

        if not subscription.cancel_at_period_end:
            await call_processor("cancel_at_period_end", client.cancel_at_period_end(subscription.id))

        logger.info("Processor subscription set to cancel at period end", extra={
            "membership_id": membership.id,
            "subscription_ref": subscription.id,
        })
        return subscription.id, False

    def _record_request(
        self,
        membership: UserMembership,
        now: datetime,
        subscription_ref: Optional[str],
        degraded: bool,
    ) -> CancellationResult:
        def work():
            changed = self.memberships.mark_cancellation_requested(
                membership.id, now, subscription_ref=subscription_ref
            )
            if not changed and subscription_ref:
                self.memberships.backfill_subscription_ref(membership.id, subscription_ref, now)
            self.db.commit()
            return changed, self.memberships.refresh(membership)

        changed, membership = run_unit_of_work(self.db, "request_cancellation", work)

        logger.info("Cancellation requested", extra={
            "membership_id": membership.id,
            "user_id": membership.user_id,
            "managed": membership.is_managed,
            "degraded": degraded,
            "access_until": membership.end_date.isoformat(),
        })

        result = self._result(membership, membership.cancelled_at, already_requested=not changed)
        result.degraded = degraded
        return result

    def _result(
        self,
        membership: UserMembership,
        cancelled_at: Optional[datetime],
        already_requested: bool,
    ) -> CancellationResult:
        return CancellationResult(
            membership_id=membership.id,
            effect=CancellationEffect.GRACE_PERIOD,
            managed=membership.is_managed,
            cancelled_at=cancelled_at,
            access_until=membership.end_date,
            already_requested=already_requested,
            subscription_ref=membership.external_subscription_ref,
        )
