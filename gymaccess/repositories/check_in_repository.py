"""
Check-in repository for physical access sessions.

The one-open-session rule is enforced by the uq_check_ins_one_open index;
this repository surfaces a violation as IntegrityError for the service to map.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from gymaccess.models.check_in import CheckInSession

logger = logging.getLogger(__name__)


class CheckInRepository:
    """Repository for CheckInSession rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_open_session(
        self,
        user_id: str,
        for_update: bool = False
    ) -> Optional[CheckInSession]:
        """
        Get the user's open session (check_out_time IS NULL), most recent first.

        Args:
            user_id: User identifier
            for_update: Take a row lock before closing the session

        Returns:
            Open session if any, None otherwise
        """
        query = self.db.query(CheckInSession).filter(
            CheckInSession.user_id == user_id,
            CheckInSession.check_out_time.is_(None)
        ).order_by(CheckInSession.check_in_time.desc())

        if for_update:
            query = query.with_for_update()

        return query.first()

    def get_latest_session(self, user_id: str) -> Optional[CheckInSession]:
        """The member's most recent visit, open or closed."""
        return self.db.query(CheckInSession).filter(
            CheckInSession.user_id == user_id
        ).order_by(CheckInSession.check_in_time.desc()).first()

    def count_open_sessions(self, user_id: str) -> int:
        return self.db.query(CheckInSession).filter(
            CheckInSession.user_id == user_id,
            CheckInSession.check_out_time.is_(None)
        ).count()

    def create(
        self,
        user_id: str,
        check_in_time: datetime,
        location: Optional[str]
    ) -> CheckInSession:
        """
        Open a new session.

        Raises IntegrityError when the user already has an open session.
        """
        session = CheckInSession(
            user_id=user_id,
            check_in_time=check_in_time,
            location=location,
        )
        self.db.add(session)
        self.db.flush()
        return session

    def close_session(self, session_id: str, check_out_time: datetime) -> bool:
        """
        Close a session if it is still open.

        Returns:
            True if this call closed it, False if it was already closed
        """
        updated = self.db.query(CheckInSession).filter(
            CheckInSession.id == session_id,
            CheckInSession.check_out_time.is_(None)
        ).update(
            {CheckInSession.check_out_time: check_out_time},
            synchronize_session=False
        )
        return updated > 0
