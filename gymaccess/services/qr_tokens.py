"""
Signed, short-lived QR entry/exit tokens.

A token is an HS256 JWT with claims {sub, action, ses, iat, exp, typ}. It is
bound to the member, to the action (entry or exit) that was valid when it
was issued, and to the member's latest visit at that moment (ses, null
before the first visit). Entry opens a new visit and exit closes the
current one, so once a token has been used it no longer matches the
member's state and is rejected as a mismatch for the rest of its TTL.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from gymaccess.config.access_control import AccessControlConfig
from gymaccess.errors import QRCodeExpiredError, QRCodeInvalidError
from gymaccess.models.base import utcnow

logger = logging.getLogger(__name__)

QR_TOKEN_TYPE = "gym-access-qr"
QR_ALGORITHM = "HS256"
VALID_ACTIONS = ("entry", "exit")


@dataclass
class QRToken:
    """Issued token for display as a QR code."""
    token: str
    action: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class QRClaims:
    """Verified token contents."""
    user_id: str
    action: str
    expires_at: datetime
    session_anchor: Optional[str] = None


class QRTokenService:
    """Issues and verifies QR tokens."""

    def __init__(self, config: AccessControlConfig, clock: Callable[[], datetime] = utcnow):
        self.secret = config.qr_signing_secret
        self.ttl_seconds = config.qr_token_ttl_seconds
        self.clock = clock

    def _require_secret(self) -> str:
        if not self.secret:
            logger.error("QR token signing secret is not configured")
            raise QRCodeInvalidError("QR entry is not available right now.")
        return self.secret

    def issue(self, user_id: str, action: str, session_anchor: Optional[str] = None) -> QRToken:
        """
        Sign a token for the member's next action.

        Args:
            user_id: Member the token is bound to
            action: "entry" or "exit"
            session_anchor: Id of the member's latest visit, if any
        """
        if action not in VALID_ACTIONS:
            raise ValueError(f"Unknown access action: {action!r}")

        now = self.clock().replace(microsecond=0)
        expires_at = now + timedelta(seconds=self.ttl_seconds)

        payload = {
            "sub": user_id,
            "action": action,
            "ses": session_anchor,
            "typ": QR_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

        token = jwt.encode(payload, self._require_secret(), algorithm=QR_ALGORITHM)

        logger.info("Issued QR token", extra={
            "user_id": user_id,
            "action": action,
            "expires_at": expires_at.isoformat(),
        })

        return QRToken(token=token, action=action, issued_at=now, expires_at=expires_at)

    def verify(self, token: str) -> QRClaims:
        """
        Verify signature, type and expiry.

        Expiry is checked against the service clock rather than the wall
        clock so it stays consistent with the rest of the engine.

        Raises:
            QRCodeInvalidError: Bad signature, malformed token or wrong type
            QRCodeExpiredError: Token past its exp
        """
        try:
            payload = jwt.decode(
                token,
                self._require_secret(),
                algorithms=[QR_ALGORITHM],
                options={
                    "verify_signature": True,
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "exp", "action", "typ"],
                }
            )
        except jwt.ExpiredSignatureError as e:
            raise QRCodeExpiredError(cause=e)
        except jwt.InvalidTokenError as e:
            logger.warning("QR token rejected", extra={"error": str(e)})
            raise QRCodeInvalidError(cause=e)

        if payload.get("typ") != QR_TOKEN_TYPE or payload.get("action") not in VALID_ACTIONS:
            logger.warning("QR token has unexpected claims", extra={
                "typ": payload.get("typ"),
                "action": payload.get("action"),
            })
            raise QRCodeInvalidError()

        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as e:
            raise QRCodeInvalidError(cause=e)

        if expires_at <= self.clock():
            raise QRCodeExpiredError()

        return QRClaims(
            user_id=str(payload["sub"]),
            action=payload["action"],
            expires_at=expires_at,
            session_anchor=payload.get("ses"),
        )
