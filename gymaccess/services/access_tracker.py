"""
Access session tracker: physical entry and exit.

CRITICAL DESIGN:
- Entry requires a valid entitlement, a location inside the geofence and no
  open session
- At most one open session per member, enforced by uq_check_ins_one_open;
  a racing insert surfaces as DuplicateSessionError
- Exit requires an open session and a location inside the geofence, but not
  an entitlement, so a member whose membership lapsed mid-visit can leave
- Exit closes the session with a conditional update (check_out_time IS NULL)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gymaccess.config.access_control import AccessControlConfig, get_access_control_config
from gymaccess.errors import (
    DuplicateSessionError,
    GymAccessError,
    NoActiveMembershipError,
    NoOpenSessionError,
    QRCodeInvalidError,
    QRCodeMismatchError,
)
from gymaccess.models.base import utcnow
from gymaccess.models.check_in import CheckInSession
from gymaccess.repositories.base import run_unit_of_work
from gymaccess.repositories.check_in_repository import CheckInRepository
from gymaccess.services.entitlement_resolver import EntitlementResolver
from gymaccess.services.geofence import Geofence, to_coordinate
from gymaccess.services.qr_tokens import QRToken, QRTokenService

logger = logging.getLogger(__name__)

ACTION_ENTRY = "entry"
ACTION_EXIT = "exit"


@dataclass
class AccessEvent:
    """Outcome of a successful entry or exit."""
    action: str
    session: CheckInSession


class AccessTracker:
    """
    Gates entry and exit on entitlement, location and session state.

    Args:
        db_session: Request-scoped database session
        config: Access control config (geofence, QR TTL)
        clock: Current time source
    """

    def __init__(
        self,
        db_session: Session,
        config: Optional[AccessControlConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.config = config or get_access_control_config()
        self.clock = clock
        self.check_ins = CheckInRepository(db_session)
        self.resolver = EntitlementResolver(db_session, clock)
        self.geofence = Geofence(self.config)
        self.qr_tokens = QRTokenService(self.config, clock)

    def determine_action(self, user_id: str) -> str:
        """'exit' if the member has an open session, otherwise 'entry'."""
        def work():
            open_session = self.check_ins.get_open_session(user_id)
            self.db.rollback()
            return ACTION_EXIT if open_session is not None else ACTION_ENTRY

        return run_unit_of_work(self.db, "determine_action", work)

    def _access_state(self, user_id: str) -> Tuple[str, Optional[str]]:
        """Next action plus the id of the latest visit that QR tokens are bound to."""
        def work():
            latest = self.check_ins.get_latest_session(user_id)
            self.db.rollback()
            if latest is None:
                return ACTION_ENTRY, None
            action = ACTION_EXIT if latest.check_out_time is None else ACTION_ENTRY
            return action, latest.id

        return run_unit_of_work(self.db, "access_state", work)

    def check_in(
        self,
        user_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> CheckInSession:
        """
        Record entry to the facility.

        Raises:
            NoActiveMembershipError: No valid entitlement
            LocationUnsupportedError: No coordinate supplied
            LocationInvalidError: Outside the geofence
            DuplicateSessionError: Already checked in
            PersistenceError: If the store fails
        """
        if not self.resolver.has_valid_entitlement(user_id):
            logger.info("Check-in refused, no valid membership", extra={"user_id": user_id})
            raise NoActiveMembershipError()

        point = to_coordinate(latitude, longitude)
        self.geofence.require_inside(point)

        def work():
            if self.check_ins.get_open_session(user_id) is not None:
                self.db.rollback()
                raise DuplicateSessionError()
            try:
                session = self.check_ins.create(user_id, self.clock(), point.as_text())
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise DuplicateSessionError(cause=e) from e
            return session

        session = run_unit_of_work(self.db, "check_in", work)

        logger.info("Member checked in", extra={
            "user_id": user_id,
            "session_id": session.id,
        })
        return session

    def check_out(
        self,
        user_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> CheckInSession:
        """
        Record exit from the facility.

        The session stays open if the location check fails.

        Raises:
            NoOpenSessionError: Not checked in, or a concurrent exit won
            LocationUnsupportedError: No coordinate supplied
            LocationInvalidError: Outside the geofence
            PersistenceError: If the store fails
        """
        def work():
            open_session = self.check_ins.get_open_session(user_id, for_update=True)
            if open_session is None:
                self.db.rollback()
                raise NoOpenSessionError()

            try:
                point = to_coordinate(latitude, longitude)
                self.geofence.require_inside(point)
            except GymAccessError:
                self.db.rollback()
                raise

            if not self.check_ins.close_session(open_session.id, self.clock()):
                self.db.rollback()
                raise NoOpenSessionError()

            self.db.commit()
            self.db.refresh(open_session)
            return open_session

        session = run_unit_of_work(self.db, "check_out", work)

        logger.info("Member checked out", extra={
            "user_id": user_id,
            "session_id": session.id,
        })
        return session

    def issue_qr_token(self, user_id: str) -> QRToken:
        """
        Token for the member's next action.

        Raises:
            NoActiveMembershipError: Next action is entry and there is no valid entitlement
        """
        action, session_anchor = self._access_state(user_id)
        if action == ACTION_ENTRY and not self.resolver.has_valid_entitlement(user_id):
            raise NoActiveMembershipError()
        return self.qr_tokens.issue(user_id, action, session_anchor)

    def scan_qr(
        self,
        user_id: str,
        token: str,
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> AccessEvent:
        """
        Perform the action encoded in a QR token.

        Raises:
            QRCodeInvalidError: Bad signature or token issued to another member
            QRCodeExpiredError: Token expired
            QRCodeMismatchError: Token action or visit no longer matches the member's state,
                including any token that has already been used
            plus everything check_in / check_out raise
        """
        claims = self.qr_tokens.verify(token)

        if claims.user_id != user_id:
            logger.warning("QR token presented by a different member", extra={
                "user_id": user_id,
            })
            raise QRCodeInvalidError()

        current, session_anchor = self._access_state(user_id)
        if claims.action != current or claims.session_anchor != session_anchor:
            logger.info("QR token no longer matches member state", extra={
                "user_id": user_id,
                "token_action": claims.action,
                "current_action": current,
            })
            raise QRCodeMismatchError()

        if current == ACTION_ENTRY:
            return AccessEvent(ACTION_ENTRY, self.check_in(user_id, latitude, longitude))
        return AccessEvent(ACTION_EXIT, self.check_out(user_id, latitude, longitude))
