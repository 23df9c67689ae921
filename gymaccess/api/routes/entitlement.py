"""
Entitlement API routes: membership status, cancellation, checkout, reconcile.

All routes require a bearer access token. Domain errors propagate to the
handlers registered in api.error_handlers.
"""

import logging

from fastapi import APIRouter, Depends, Query

from gymaccess.api.dependencies import (
    get_cancellation_coordinator,
    get_entitlement_resolver,
    get_rate_limiter,
    get_reconciler,
)
from gymaccess.api.schemas.entitlement import (
    CancellationResponse,
    CheckoutRequest,
    CheckoutResponse,
    EntitlementStatusResponse,
    ReconcileResponse,
)
from gymaccess.auth.identity import AuthenticatedUser, get_current_user
from gymaccess.services.cancellation_coordinator import (
    CancellationCoordinator,
    CancellationEffect,
    CancellationResult,
)
from gymaccess.services.entitlement_resolver import EntitlementResolver, EntitlementStatus
from gymaccess.services.rate_limiter import RateLimiter
from gymaccess.services.subscription_reconciler import (
    ReconciliationOutcome,
    SubscriptionReconciler,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/entitlement", tags=["entitlement"])


def _status_response(status: EntitlementStatus, reconciliation=None) -> EntitlementStatusResponse:
    return EntitlementStatusResponse(
        has_access=status.has_access,
        membership_id=status.membership_id,
        plan_id=status.plan_id,
        status=status.status,
        payment_status=status.payment_status,
        payment_method=status.payment_method,
        is_managed=status.is_managed,
        start_date=status.start_date,
        end_date=status.end_date,
        cancellation_requested=status.cancellation_requested,
        cancelled_at=status.cancelled_at,
        access_until=status.access_until,
        checked_at=status.checked_at,
        reconciliation=reconciliation,
    )


def _cancellation_message(result: CancellationResult) -> str:
    if result.effect == CancellationEffect.IMMEDIATE:
        return "Your membership has been cancelled."
    if result.already_requested:
        return "Your membership is already set to end at the close of the current period."
    return "Your membership will end at the close of the current period."


@router.get("/status", response_model=EntitlementStatusResponse)
async def get_entitlement_status(
    reconcile: bool = Query(False, description="Refresh from the payment processor first"),
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Current membership state for the caller.

    With reconcile=true the processor is polled first; a processor failure
    does not fail the request.
    """
    reconciliation = None
    if reconcile:
        result = await reconciler.reconcile(user)
        reconciliation = result.outcome.value

    return _status_response(resolver.get_status(user.user_id), reconciliation)


@router.post("/cancel", response_model=CancellationResponse)
async def cancel_membership(
    user: AuthenticatedUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
    coordinator: CancellationCoordinator = Depends(get_cancellation_coordinator),
):
    """
    Request cancellation of the caller's membership.

    Managed subscriptions end at the close of the paid period. Other
    memberships follow the configured grace period policy.
    """
    limiter.hit("cancel", user.user_id)

    logger.info("Cancellation requested", extra={"user_id": user.user_id})
    result = await coordinator.cancel(user)

    return CancellationResponse(
        membership_id=result.membership_id,
        effect=result.effect.value,
        access_until=result.access_until,
        cancelled_at=result.cancelled_at,
        already_requested=result.already_requested,
        managed=result.managed,
        message=_cancellation_message(result),
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Open a hosted subscription checkout.

    The membership is created only after the processor confirms payment.
    """
    limiter.hit("checkout", user.user_id)

    handle = await reconciler.start_checkout(
        user,
        plan_id=checkout_request.plan_id,
        success_url=checkout_request.success_url,
        cancel_url=checkout_request.cancel_url,
    )

    return CheckoutResponse(
        checkout_url=handle.url,
        session_id=handle.session_id,
        expires_at=handle.expires_at,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_membership(
    user: AuthenticatedUser = Depends(get_current_user),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Poll the processor and bring the caller's membership up to date."""
    result = await reconciler.reconcile(user)

    return ReconcileResponse(
        outcome=result.outcome.value,
        membership_id=result.membership_id,
        processor_status=result.processor_status,
        retryable=result.outcome == ReconciliationOutcome.RETRYABLE,
        detail=result.detail,
    )
