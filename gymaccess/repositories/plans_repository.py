"""
Plans repository for the membership plan catalog.

Plans are global catalog entries; the engine only reads them.
"""

import logging
from typing import Optional, List

from sqlalchemy.orm import Session

from gymaccess.models.plan import MembershipPlan

logger = logging.getLogger(__name__)


class PlansRepository:
    """Read access to MembershipPlan rows, plus inserts for seeding."""

    def __init__(self, db_session: Session):
        """
        Initialize plans repository.

        Args:
            db_session: Database session
        """
        self.db = db_session

    def get_by_id(self, plan_id: str) -> Optional[MembershipPlan]:
        """
        Get a plan by ID.

        Args:
            plan_id: Plan identifier

        Returns:
            MembershipPlan if found, None otherwise
        """
        return self.db.query(MembershipPlan).filter(MembershipPlan.id == plan_id).first()

    def get_by_name(self, name: str) -> Optional[MembershipPlan]:
        return self.db.query(MembershipPlan).filter(MembershipPlan.name == name).first()

    def get_all(self) -> List[MembershipPlan]:
        return self.db.query(MembershipPlan).order_by(
            MembershipPlan.price.asc()
        ).all()

    def create(self, plan: MembershipPlan) -> MembershipPlan:
        self.db.add(plan)
        self.db.flush()

        logger.info("Plan created", extra={
            "plan_id": plan.id,
            "plan_name": plan.name,
            "duration_days": plan.duration_days,
        })

        return plan
