"""
MembershipPlan model for the plan catalog.

Plans are GLOBAL catalog entries. They are created and edited by admin
tooling and are treated as immutable by the entitlement engine.
"""

from sqlalchemy import Column, String, Integer, Numeric, CheckConstraint

from gymaccess.models.base import Base, TimestampMixin, generate_uuid


class MembershipPlan(Base, TimestampMixin):
    """
    A purchasable membership plan.

    duration_days drives end-date arithmetic for new memberships
    (see services.membership_dates).
    """

    __tablename__ = "membership_plans"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    name = Column(
        String(100),
        nullable=False,
        comment="Display name (e.g. Monthly Unlimited)"
    )
    price = Column(
        Numeric(10, 2),
        nullable=False,
        comment="Price per billing period in major currency units"
    )
    duration_days = Column(
        Integer,
        nullable=False,
        comment="Length of one membership period in days"
    )
    access_level = Column(
        String(50),
        nullable=False,
        default="standard",
        comment="Facility access tier granted by the plan"
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_membership_plans_price_positive"),
        CheckConstraint(
            "duration_days >= 1 AND duration_days <= 3650",
            name="ck_membership_plans_duration_range"
        ),
    )

    def __repr__(self) -> str:
        return f"<MembershipPlan(id={self.id}, name={self.name}, duration_days={self.duration_days})>"

    @property
    def price_cents(self) -> int:
        """Price in minor units, as the payment processor expects it."""
        return int(round(float(self.price) * 100))
