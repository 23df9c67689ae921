"""
Caller identity from bearer access tokens.

Access tokens are HS256 JWTs issued by the auth provider and signed with
AUTH_JWT_SECRET. The engine trusts only the verified 'sub' claim as the
user id; the email is used for processor lookups only when the token says
it is verified.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from gymaccess.errors import AuthenticationError

logger = logging.getLogger(__name__)

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity of the caller, resolved per request."""
    user_id: str
    email: Optional[str] = None
    email_verified: bool = False


class AccessTokenVerifier:
    """
    Verifies member access tokens (JWTs).

    Tokens are signed with HS256 using the shared auth secret. The audience
    claim is verified only when AUTH_JWT_AUDIENCE is configured.
    """

    def __init__(self, secret: Optional[str] = None, audience: Optional[str] = None):
        self.secret = secret or os.getenv("AUTH_JWT_SECRET")
        self.audience = audience if audience is not None else os.getenv("AUTH_JWT_AUDIENCE")

        if not self.secret:
            raise ValueError("AUTH_JWT_SECRET environment variable is required")

    def verify(self, token: str) -> AuthenticatedUser:
        """
        Verify an access token and extract the caller identity.

        Raises:
            AuthenticationError: If the token is invalid, expired or has no subject
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience or None,
                options={
                    "verify_signature": True,
                    "verify_aud": bool(self.audience),
                    "verify_exp": True,
                    "require": ["sub", "exp"],
                }
            )
        except jwt.ExpiredSignatureError as e:
            logger.warning("Access token expired")
            raise AuthenticationError("Session has expired. Please sign in again.", cause=e)
        except jwt.InvalidAudienceError as e:
            logger.warning("Access token invalid audience", extra={
                "expected": self.audience
            })
            raise AuthenticationError("Access token has invalid audience", cause=e)
        except jwt.InvalidSignatureError as e:
            logger.warning("Access token invalid signature")
            raise AuthenticationError("Access token signature is invalid", cause=e)
        except jwt.InvalidTokenError as e:
            logger.warning("Access token rejected", extra={"error": str(e)})
            raise AuthenticationError("Access token is malformed", cause=e)

        user_id = str(payload.get("sub") or "").strip()
        if not user_id:
            raise AuthenticationError("Access token has no subject")

        metadata = payload.get("user_metadata") or {}
        email_verified = payload.get("email_verified", metadata.get("email_verified", False))

        return AuthenticatedUser(
            user_id=user_id,
            email=payload.get("email"),
            email_verified=bool(email_verified),
        )


# Singleton verifier instance
_verifier: Optional[AccessTokenVerifier] = None


def get_token_verifier() -> AccessTokenVerifier:
    """
    Get singleton access token verifier.

    Raises:
        AuthenticationError: If token verification is not configured
    """
    global _verifier
    if _verifier is None:
        try:
            _verifier = AccessTokenVerifier()
        except ValueError as e:
            logger.error("Access token verification not configured", extra={"error": str(e)})
            raise AuthenticationError("Authentication is not configured", cause=e)
    return _verifier


def reset_token_verifier() -> None:
    """Reset singleton (for tests only)."""
    global _verifier
    _verifier = None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthenticatedUser:
    """
    FastAPI dependency resolving the authenticated caller.

    Raises:
        AuthenticationError: No bearer token or an invalid one
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()

    return get_token_verifier().verify(credentials.credentials)
