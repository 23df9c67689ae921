"""
Request/response schemas for the entitlement API.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class EntitlementStatusResponse(BaseModel):
    """
    Server-authoritative membership state.

    Clients may cache this for display but must not treat a cached
    cancellation flag as authoritative.
    """
    has_access: bool
    membership_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    is_managed: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cancellation_requested: bool = False
    cancelled_at: Optional[datetime] = None
    access_until: Optional[datetime] = None
    checked_at: datetime
    reconciliation: Optional[str] = Field(
        None, description="Outcome of the opportunistic reconcile, when requested"
    )


class CancellationResponse(BaseModel):
    """Result of a cancellation request."""
    membership_id: str
    effect: str = Field(..., description="grace_period or immediate")
    access_until: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    already_requested: bool = False
    managed: bool = False
    message: str


class CheckoutRequest(BaseModel):
    """Request to start a hosted subscription checkout."""
    plan_id: str = Field(..., min_length=1, description="Plan to subscribe to")
    success_url: str = Field(..., min_length=1, description="Redirect after payment")
    cancel_url: str = Field(..., min_length=1, description="Redirect if the member abandons checkout")


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
    expires_at: Optional[datetime] = None


class ReconcileResponse(BaseModel):
    """Outcome of a processor reconciliation."""
    outcome: str
    membership_id: Optional[str] = None
    processor_status: Optional[str] = None
    retryable: bool = False
    detail: Optional[str] = None
