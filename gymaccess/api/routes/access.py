"""
Access API routes: entry/exit by location or QR token.
"""

import logging

from fastapi import APIRouter, Depends

from gymaccess.api.dependencies import get_access_tracker, get_rate_limiter
from gymaccess.api.schemas.access import (
    AccessSessionResponse,
    ActionResponse,
    LocationClaim,
    QRScanRequest,
    QRTokenResponse,
)
from gymaccess.auth.identity import AuthenticatedUser, get_current_user
from gymaccess.models.check_in import CheckInSession
from gymaccess.services.access_tracker import ACTION_ENTRY, ACTION_EXIT, AccessTracker
from gymaccess.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/access", tags=["access"])

_MESSAGES = {
    ACTION_ENTRY: "Checked in. Enjoy your workout!",
    ACTION_EXIT: "Checked out. See you next time!",
}


def _session_response(action: str, session: CheckInSession) -> AccessSessionResponse:
    return AccessSessionResponse(
        session_id=session.id,
        action=action,
        check_in_time=session.check_in_time,
        check_out_time=session.check_out_time,
        message=_MESSAGES[action],
    )


@router.get("/action", response_model=ActionResponse)
async def get_next_action(
    user: AuthenticatedUser = Depends(get_current_user),
    tracker: AccessTracker = Depends(get_access_tracker),
):
    """Whether the caller's next action is entry or exit."""
    return ActionResponse(action=tracker.determine_action(user.user_id))


@router.post("/check-in", response_model=AccessSessionResponse)
async def check_in(
    claim: LocationClaim,
    user: AuthenticatedUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tracker: AccessTracker = Depends(get_access_tracker),
):
    limiter.hit("check-in", user.user_id)
    session = tracker.check_in(user.user_id, claim.latitude, claim.longitude)
    return _session_response(ACTION_ENTRY, session)


@router.post("/check-out", response_model=AccessSessionResponse)
async def check_out(
    claim: LocationClaim,
    user: AuthenticatedUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tracker: AccessTracker = Depends(get_access_tracker),
):
    limiter.hit("check-out", user.user_id)
    session = tracker.check_out(user.user_id, claim.latitude, claim.longitude)
    return _session_response(ACTION_EXIT, session)


@router.get("/qr", response_model=QRTokenResponse)
async def get_qr_token(
    user: AuthenticatedUser = Depends(get_current_user),
    tracker: AccessTracker = Depends(get_access_tracker),
):
    """
    Signed token for the caller's next action, to be rendered as a QR code.

    Expires after the configured TTL (5 minutes by default).
    """
    qr = tracker.issue_qr_token(user.user_id)
    return QRTokenResponse(token=qr.token, action=qr.action, expires_at=qr.expires_at)


@router.post("/qr-scan", response_model=AccessSessionResponse)
async def scan_qr_token(
    scan: QRScanRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
    tracker: AccessTracker = Depends(get_access_tracker),
):
    limiter.hit("qr-scan", user.user_id)
    event = tracker.scan_qr(user.user_id, scan.token, scan.latitude, scan.longitude)
    return _session_response(event.action, event.session)
