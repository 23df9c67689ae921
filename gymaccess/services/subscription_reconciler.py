"""
Subscription reconciler: keeps local memberships in step with Stripe.

Runs on demand (status page, explicit reconcile call), for each processor
lifecycle event, and from the batch job in jobs.reconcile_memberships.

CRITICAL DESIGN:
- Upserts are keyed by external_subscription_ref
- A state is applied only if it is not older than processor_synced_at, so
  late, duplicate or out-of-order deliveries cannot roll a record back
- Events are deduplicated by processor event id
- A record with an explicit non-managed payment_method is never modified
- A managed record is never created from a subscription whose metadata names
  a different member
- Processor failures during polling are reported as a retryable outcome,
  never raised
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gymaccess.auth.identity import AuthenticatedUser
from gymaccess.config.access_control import AccessControlConfig, get_access_control_config
from gymaccess.errors import (
    MembershipConflictError,
    PlanNotFoundError,
    ProcessorUnavailableError,
)
from gymaccess.integrations.stripe.billing_client import StripeSubscription, parse_subscription
from gymaccess.models.base import utcnow
from gymaccess.models.membership import (
    UserMembership,
    MembershipStatus,
    PaymentMethod,
    PaymentStatus,
)
from gymaccess.repositories.base import run_unit_of_work
from gymaccess.repositories.membership_repository import MembershipRepository
from gymaccess.repositories.plans_repository import PlansRepository
from gymaccess.repositories.processor_event_repository import ProcessorEventRepository
from gymaccess.services.entitlement_resolver import EntitlementResolver
from gymaccess.services.membership_dates import compute_end_date
from gymaccess.services.membership_service import MembershipService
from gymaccess.services.processor_boundary import call_processor, require_client
from gymaccess.services.subscription_lookup import SubscriptionLocator, belongs_to

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
})

# Processor statuses a new local record may be created from
_CREATABLE_STATUSES = ("active", "trialing")


class ReconciliationOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"      # Nothing newer to apply
    NOT_FOUND = "not_found"      # No subscription at the processor
    SKIPPED = "skipped"          # Not ours to change (non-managed, foreign, unmappable)
    DUPLICATE = "duplicate"      # Event already applied
    RETRYABLE = "retryable"      # Processor unavailable; try again later


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    membership_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    processor_status: Optional[str] = None
    detail: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome in (ReconciliationOutcome.CREATED, ReconciliationOutcome.UPDATED)


@dataclass
class CheckoutHandle:
    """Where to send the member to complete payment."""
    session_id: str
    url: str
    customer_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class SubscriptionEvent:
    """A processor lifecycle event, already authenticated by the transport."""
    event_id: str
    event_type: str
    created_at: datetime
    subscription: Optional[StripeSubscription] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "SubscriptionEvent":
        """
        Parse a Stripe event body.

        Raises:
            ValueError: If required fields are missing
        """
        try:
            event_id = payload["id"]
            event_type = payload["type"]
            created = payload["created"]
        except KeyError as e:
            raise ValueError(f"Event payload missing field: {e}")

        subscription = None
        data_object = (payload.get("data") or {}).get("object") or {}
        if event_type in SUBSCRIPTION_EVENT_TYPES and data_object.get("id"):
            subscription = parse_subscription(data_object)

        return cls(
            event_id=event_id,
            event_type=event_type,
            created_at=datetime.fromtimestamp(int(created), tz=timezone.utc),
            subscription=subscription,
        )


def map_subscription_state(subscription: StripeSubscription) -> dict:
    """
    Local field updates implied by a processor subscription status.

    active/trialing     -> active + paid, end_date = current_period_end
    incomplete/past_due -> payment pending
    unpaid/incomplete_expired -> renewal failure: expired + failed
    canceled            -> expired
    """
    status = subscription.status

    if status in ("active", "trialing"):
        values = {
            "status": MembershipStatus.ACTIVE.value,
            "payment_status": PaymentStatus.PAID.value,
        }
        if subscription.current_period_end is not None:
            values["end_date"] = subscription.current_period_end
        return values

    if status in ("incomplete", "past_due"):
        return {"payment_status": PaymentStatus.PENDING.value}

    if status in ("unpaid", "incomplete_expired"):
        return {
            "status": MembershipStatus.EXPIRED.value,
            "payment_status": PaymentStatus.FAILED.value,
        }

    if status == "canceled":
        return {"status": MembershipStatus.EXPIRED.value}

    return {}


class SubscriptionReconciler:
    """
    Synchronizes UserMembership rows with processor subscriptions.

    Args:
        db_session: Request-scoped database session
        billing_client: StripeBillingClient, or None when not configured
        config: Access control config (end-date policy)
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
        self.plans = PlansRepository(db_session)
        self.events = ProcessorEventRepository(db_session)
        self.membership_service = MembershipService(db_session, self.config, clock)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def start_checkout(
        self,
        user: AuthenticatedUser,
        plan_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutHandle:
        """
        Open a hosted subscription checkout for a plan.

        No membership is written here; the record is created once the
        processor confirms payment (event or reconcile).

        Raises:
            MembershipConflictError: The member already has valid access
            PlanNotFoundError: Unknown plan
            ProcessorUnavailableError: Processor failed or is not configured
        """
        if EntitlementResolver(self.db, self.clock).has_valid_entitlement(user.user_id):
            raise MembershipConflictError()

        plan = run_unit_of_work(self.db, "load_plan", lambda: self.plans.get_by_id(plan_id))
        if plan is None:
            raise PlanNotFoundError()

        client = require_client(self.client, "create_checkout_session")

        customer_id = await self._find_or_create_customer(client, user)
        session = await call_processor(
            "create_checkout_session",
            client.create_checkout_session(
                customer_id=customer_id,
                plan_name=plan.name,
                price_cents=plan.price_cents,
                interval_days=plan.duration_days,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"user_id": user.user_id, "plan_id": plan.id},
            )
        )

        logger.info("Checkout session opened", extra={
            "user_id": user.user_id,
            "plan_id": plan.id,
            "checkout_session_id": session.id,
        })

        return CheckoutHandle(
            session_id=session.id,
            url=session.url,
            customer_id=session.customer_id,
            expires_at=session.expires_at,
        )

    async def _find_or_create_customer(self, client, user: AuthenticatedUser) -> str:
        if user.email and user.email_verified:
            customers = await call_processor("list_customers", client.list_customers(user.email))
            owned = [c for c in customers if c.metadata.get("user_id") == user.user_id]
            if owned:
                return owned[0].id
            if len(customers) == 1 and not customers[0].metadata.get("user_id"):
                return customers[0].id

        customer = await call_processor(
            "create_customer", client.create_customer(user.email, user.user_id)
        )
        return customer.id

    # ------------------------------------------------------------------
    # Polling reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, user: AuthenticatedUser) -> ReconciliationResult:
        """
        Pull the member's processor state and upsert the local record.

        Never raises for processor failures; they come back as RETRYABLE.

        Raises:
            PersistenceError: If the store fails
        """
        latest = run_unit_of_work(
            self.db, "load_membership", lambda: self.memberships.get_latest_for_user(user.user_id)
        )

        now = self.clock()
        if latest is not None and not latest.is_managed and latest.grants_access_at(now):
            return ReconciliationResult(
                outcome=ReconciliationOutcome.SKIPPED,
                membership_id=latest.id,
                detail="membership is not billed by the processor",
            )

        if self.client is None:
            logger.warning("Reconcile skipped, payment processor not configured", extra={
                "user_id": user.user_id,
            })
            return ReconciliationResult(
                outcome=ReconciliationOutcome.RETRYABLE,
                detail="payment processor not configured",
            )

        ref = latest.external_subscription_ref if latest is not None else None
        try:
            subscription = await SubscriptionLocator(self.client).find(
                user_id=user.user_id,
                email=user.email,
                email_verified=user.email_verified,
                subscription_ref=ref,
            )
        except ProcessorUnavailableError as e:
            logger.warning("Reconcile deferred, processor unavailable", extra={
                "user_id": user.user_id,
                "retryable": e.retryable,
            })
            return ReconciliationResult(
                outcome=ReconciliationOutcome.RETRYABLE,
                membership_id=latest.id if latest is not None else None,
                subscription_ref=ref,
                detail=e.message,
            )

        if subscription is None:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND,
                membership_id=latest.id if latest is not None else None,
            )

        synced_at = self.clock()
        return self._apply_in_transaction(subscription, synced_at, expected_user_id=user.user_id)

    async def reconcile_record(self, membership: UserMembership) -> ReconciliationResult:
        """
        Refresh a single managed record by its subscription reference.

        Used by the batch job; processor failures come back as RETRYABLE.
        """
        if not membership.is_managed or not membership.external_subscription_ref:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.SKIPPED,
                membership_id=membership.id,
                detail="membership has no processor subscription",
            )

        client = self.client
        if client is None:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.RETRYABLE,
                membership_id=membership.id,
                detail="payment processor not configured",
            )

        try:
            subscription = await call_processor(
                "get_subscription", client.get_subscription(membership.external_subscription_ref)
            )
        except ProcessorUnavailableError as e:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.RETRYABLE,
                membership_id=membership.id,
                subscription_ref=membership.external_subscription_ref,
                detail=e.message,
            )

        if subscription is None:
            logger.warning("Reconciliation gap: subscription missing at processor", extra={
                "membership_id": membership.id,
                "subscription_ref": membership.external_subscription_ref,
            })
            return ReconciliationResult(
                outcome=ReconciliationOutcome.NOT_FOUND,
                membership_id=membership.id,
                subscription_ref=membership.external_subscription_ref,
            )

        return self._apply_in_transaction(
            subscription, self.clock(), expected_user_id=membership.user_id
        )

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def apply_subscription_event(self, event: SubscriptionEvent) -> ReconciliationResult:
        """
        Apply one processor lifecycle event exactly once.

        Events may arrive duplicated or out of order. Duplicates are detected
        by event id; older states lose to processor_synced_at.

        Raises:
            PersistenceError: If the store fails
        """
        def work():
            if self.events.is_processed(event.event_id):
                logger.info("Processor event already applied", extra={"event_id": event.event_id})
                return ReconciliationResult(outcome=ReconciliationOutcome.DUPLICATE)

            subscription = event.subscription
            try:
                self.events.mark_processed(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    event_created_at=event.created_at,
                    processed_at=self.clock(),
                    subscription_ref=subscription.id if subscription else None,
                )

                if subscription is None:
                    result = ReconciliationResult(
                        outcome=ReconciliationOutcome.SKIPPED,
                        detail=f"unhandled event type {event.event_type}",
                    )
                else:
                    result = self._apply_subscription(
                        subscription, event.created_at, expected_user_id=None
                    )
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if self.events.is_processed(event.event_id):
                    return ReconciliationResult(outcome=ReconciliationOutcome.DUPLICATE)
                logger.warning("Processor event conflicts with local state", extra={
                    "event_id": event.event_id,
                    "subscription_ref": subscription.id if subscription else None,
                })
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.SKIPPED,
                    subscription_ref=subscription.id if subscription else None,
                    detail="conflicts with an existing active membership",
                )

            logger.info("Processor event applied", extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "outcome": result.outcome.value,
            })
            return result

        return run_unit_of_work(self.db, "apply_subscription_event", work)

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def _apply_in_transaction(
        self,
        subscription: StripeSubscription,
        synced_at: datetime,
        expected_user_id: Optional[str],
    ) -> ReconciliationResult:
        def work():
            try:
                result = self._apply_subscription(subscription, synced_at, expected_user_id)
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                existing = self.memberships.get_by_subscription_ref(subscription.id)
                if existing is not None:
                    # A concurrent reconcile created it first
                    return ReconciliationResult(
                        outcome=ReconciliationOutcome.UNCHANGED,
                        membership_id=existing.id,
                        subscription_ref=subscription.id,
                        processor_status=subscription.status,
                    )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.SKIPPED,
                    subscription_ref=subscription.id,
                    processor_status=subscription.status,
                    detail="conflicts with an existing active membership",
                )

        return run_unit_of_work(self.db, "reconcile_subscription", work)

    def _apply_subscription(
        self,
        subscription: StripeSubscription,
        synced_at: datetime,
        expected_user_id: Optional[str],
    ) -> ReconciliationResult:
        """
        Upsert one subscription inside the current transaction (no commit).

        May raise IntegrityError when a concurrent writer wins a unique index.
        """
        record = self.memberships.get_by_subscription_ref(subscription.id)
        if record is not None:
            return self._update_record(record, subscription, synced_at)

        owner = subscription.user_id
        if expected_user_id is not None:
            if not belongs_to(subscription, expected_user_id):
                logger.warning("Subscription belongs to another member, not linking", extra={
                    "user_id": expected_user_id,
                    "subscription_ref": subscription.id,
                })
                return self._skipped(subscription, "subscription belongs to another member")
            owner = expected_user_id

        if owner is None:
            return self._skipped(subscription, "subscription has no member metadata")

        now = self.clock()
        active = self.memberships.get_active_for_user(owner)
        if active is not None and active.end_date <= now:
            active = None

        if active is not None:
            if active.is_managed and not active.external_subscription_ref:
                # Legacy managed row created before references were stored
                self.memberships.apply_processor_state(
                    active.id,
                    dict(map_subscription_state(subscription), external_subscription_ref=subscription.id),
                    synced_at,
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.UPDATED,
                    membership_id=active.id,
                    subscription_ref=subscription.id,
                    processor_status=subscription.status,
                )
            return self._skipped(subscription, "member already holds an active membership")

        if subscription.status not in _CREATABLE_STATUSES:
            return ReconciliationResult(
                outcome=ReconciliationOutcome.UNCHANGED,
                subscription_ref=subscription.id,
                processor_status=subscription.status,
                detail="no local membership to update",
            )

        plan_id = subscription.plan_id
        plan = self.plans.get_by_id(plan_id) if plan_id else None
        if plan is None:
            logger.error("Cannot create membership, subscription plan unknown", extra={
                "subscription_ref": subscription.id,
                "plan_id": plan_id,
            })
            return self._skipped(subscription, "subscription plan is unknown")

        end_date = subscription.current_period_end
        if end_date is None or end_date <= now:
            end_date = compute_end_date(now, plan.duration_days, self.config.end_date_policy)

        try:
            membership = self.membership_service.insert_membership(
                user_id=owner,
                plan_id=plan.id,
                payment_method=PaymentMethod.MANAGED_SUBSCRIPTION.value,
                payment_status=PaymentStatus.PAID.value,
                start_date=now,
                end_date=end_date,
                external_subscription_ref=subscription.id,
                processor_synced_at=synced_at,
            )
        except (MembershipConflictError, PlanNotFoundError) as e:
            return self._skipped(subscription, e.message)

        if subscription.cancel_at_period_end:
            self.memberships.mark_cancellation_requested(membership.id, synced_at)

        logger.info("Managed membership created from processor subscription", extra={
            "membership_id": membership.id,
            "user_id": owner,
            "subscription_ref": subscription.id,
        })

        return ReconciliationResult(
            outcome=ReconciliationOutcome.CREATED,
            membership_id=membership.id,
            subscription_ref=subscription.id,
            processor_status=subscription.status,
        )

    def _update_record(
        self,
        record: UserMembership,
        subscription: StripeSubscription,
        synced_at: datetime,
    ) -> ReconciliationResult:
        if not record.is_managed:
            logger.warning("Processor state ignored for non-managed membership", extra={
                "membership_id": record.id,
                "payment_method": record.normalized_payment_method,
            })
            return ReconciliationResult(
                outcome=ReconciliationOutcome.SKIPPED,
                membership_id=record.id,
                subscription_ref=subscription.id,
                processor_status=subscription.status,
                detail="membership is not billed by the processor",
            )

        values = map_subscription_state(subscription)
        if subscription.cancel_at_period_end and record.cancelled_at is None:
            values["cancelled_at"] = synced_at

        if "end_date" in values and values["end_date"] < record.start_date:
            values.pop("end_date")

        applied = self.memberships.apply_processor_state(record.id, values, synced_at)

        return ReconciliationResult(
            outcome=ReconciliationOutcome.UPDATED if applied else ReconciliationOutcome.UNCHANGED,
            membership_id=record.id,
            subscription_ref=subscription.id,
            processor_status=subscription.status,
        )

    @staticmethod
    def _skipped(subscription: StripeSubscription, detail: str) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=ReconciliationOutcome.SKIPPED,
            subscription_ref=subscription.id,
            processor_status=subscription.status,
            detail=detail,
        )
