"""
Request/response schemas for entry and exit.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class LocationClaim(BaseModel):
    """Device-reported location. Both fields are required for a valid claim."""
    latitude: Optional[float] = Field(None, description="WGS84 latitude")
    longitude: Optional[float] = Field(None, description="WGS84 longitude")


class QRScanRequest(LocationClaim):
    token: str = Field(..., min_length=1, description="Signed QR token")


class ActionResponse(BaseModel):
    action: str = Field(..., description="entry or exit")


class AccessSessionResponse(BaseModel):
    """A CheckInSession after entry or exit."""
    session_id: str
    action: str
    check_in_time: datetime
    check_out_time: Optional[datetime] = None
    message: str


class QRTokenResponse(BaseModel):
    token: str
    action: str
    expires_at: datetime
