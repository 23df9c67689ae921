"""
Database models for plans, memberships, access sessions and shared counters.

Importing this package registers every table with Base.metadata.
"""

from gymaccess.models.base import Base, TimestampMixin, UTCDateTime
from gymaccess.models.plan import MembershipPlan
from gymaccess.models.membership import (
    UserMembership,
    MembershipStatus,
    PaymentStatus,
    PaymentMethod,
    normalize_payment_method,
)
from gymaccess.models.check_in import CheckInSession
from gymaccess.models.processor_event import ProcessorEvent
from gymaccess.models.rate_limit import RateLimitCounter

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "MembershipPlan",
    "UserMembership",
    "MembershipStatus",
    "PaymentStatus",
    "PaymentMethod",
    "normalize_payment_method",
    "CheckInSession",
    "ProcessorEvent",
    "RateLimitCounter",
]
