"""
UserMembership model: a member's entitlement record.

CRITICAL: At most one ACTIVE membership per user. This is enforced by a
partial unique index, not only by service logic, so concurrent double
submits cannot create duplicates.

Status is synced with the payment processor via events and reconciliation
for managed subscriptions, and expires lazily when read after end_date.
"""

from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, Enum, ForeignKey, Index, CheckConstraint, text
)
from sqlalchemy.orm import relationship

from gymaccess.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class MembershipStatus(str, PyEnum):
    """Membership lifecycle states."""
    ACTIVE = "active"            # Access-bearing (subject to end_date and payment)
    EXPIRED = "expired"          # end_date passed or renewal failed
    CANCELLED = "cancelled"      # Ended immediately (legacy cancellation policy)


class PaymentStatus(str, PyEnum):
    """Payment state of the current period."""
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class PaymentMethod(str, PyEnum):
    """
    How the membership is paid for.

    MANAGED_SUBSCRIPTION is the only value that means "billed by the
    external processor". It is set once when the record is created.
    """
    MANAGED_SUBSCRIPTION = "managed_subscription"
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    STAFF = "staff"
    OTHER = "other"


def normalize_payment_method(raw) -> Optional[str]:
    """Trim and lowercase a stored payment method; empty means unset."""
    if raw is None:
        return None
    if isinstance(raw, PyEnum):
        raw = raw.value
    value = str(raw).strip().lower()
    return value or None


class UserMembership(Base, TimestampMixin):
    """
    Tracks a user's membership period for one plan.

    CRITICAL DESIGN:
    - ONE active membership per user (partial unique index)
    - payment_method is authoritative for processor ownership
    - cancelled_at records a cancellation request; it never changes status
    - processor_synced_at orders processor updates so late or duplicate
      deliveries cannot overwrite newer state
    """

    __tablename__ = "user_memberships"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Authenticated user identifier (JWT sub)"
    )
    plan_id = Column(
        String(36),
        ForeignKey("membership_plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)

    status = Column(
        Enum(
            *[s.value for s in MembershipStatus],
            name="membership_status"
        ),
        nullable=False,
        default=MembershipStatus.ACTIVE.value,
        index=True
    )
    payment_status = Column(
        Enum(
            *[s.value for s in PaymentStatus],
            name="membership_payment_status"
        ),
        nullable=False,
        default=PaymentStatus.PENDING.value
    )
    payment_method = Column(
        String(50),
        nullable=True,
        comment="managed_subscription, cash, card, bank_transfer, staff, other. NULL for legacy records."
    )

    external_subscription_ref = Column(
        String(255),
        nullable=True,
        comment="Processor subscription ID for managed memberships"
    )
    cancelled_at = Column(
        UTCDateTime,
        nullable=True,
        comment="When the member requested cancellation"
    )
    processor_synced_at = Column(
        UTCDateTime,
        nullable=True,
        comment="Timestamp of the newest processor state applied to this record"
    )

    plan = relationship("MembershipPlan")

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_user_memberships_dates"),
        Index(
            "uq_user_memberships_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "uq_user_memberships_subscription_ref",
            "external_subscription_ref",
            unique=True,
            postgresql_where=text("external_subscription_ref IS NOT NULL"),
            sqlite_where=text("external_subscription_ref IS NOT NULL"),
        ),
        Index("ix_user_memberships_user_start", "user_id", "start_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserMembership(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, end_date={self.end_date})>"
        )

    @property
    def normalized_payment_method(self) -> Optional[str]:
        return normalize_payment_method(self.payment_method)

    @property
    def is_managed(self) -> bool:
        """
        Whether recurring billing for this record belongs to the processor.

        Managed only if payment_method is managed_subscription, or the method
        is unset (legacy row) and a subscription reference is present. Any
        other explicit method is never managed.
        """
        method = self.normalized_payment_method
        if method == PaymentMethod.MANAGED_SUBSCRIPTION.value:
            return True
        if method is None and self.external_subscription_ref:
            return True
        return False

    @property
    def cancellation_requested(self) -> bool:
        return self.cancelled_at is not None

    def grants_access_at(self, now) -> bool:
        """Entitlement predicate; end_date is re-checked independently of status."""
        return (
            self.status == MembershipStatus.ACTIVE.value
            and self.payment_status == PaymentStatus.PAID.value
            and self.end_date > now
        )

    def is_stale_active(self, now) -> bool:
        """Stored as active although end_date has already passed."""
        return self.status == MembershipStatus.ACTIVE.value and self.end_date <= now
