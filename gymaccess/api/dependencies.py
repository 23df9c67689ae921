"""
FastAPI dependencies shared by the entitlement and access routers.

Tests override get_clock, get_config and get_processor_client through
app.dependency_overrides.
"""

import logging
from datetime import datetime
from typing import AsyncGenerator, Callable, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from gymaccess.config.access_control import AccessControlConfig, get_access_control_config
from gymaccess.database.session import get_db_session
from gymaccess.integrations.stripe.billing_client import StripeBillingClient, get_billing_client
from gymaccess.models.base import utcnow
from gymaccess.services.access_tracker import AccessTracker
from gymaccess.services.cancellation_coordinator import CancellationCoordinator
from gymaccess.services.entitlement_resolver import EntitlementResolver
from gymaccess.services.rate_limiter import RateLimiter
from gymaccess.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_config() -> AccessControlConfig:
    return get_access_control_config()


async def get_processor_client() -> AsyncGenerator[Optional[StripeBillingClient], None]:
    """
    Per-request Stripe client, or None when STRIPE_SECRET_KEY is not set.

    Non-managed cancellations and entry/exit work without a processor.
    """
    try:
        client = get_billing_client()
    except ValueError:
        logger.debug("Stripe not configured; processor-backed operations unavailable")
        yield None
        return

    try:
        yield client
    finally:
        await client.close()


def get_entitlement_resolver(
    db: Session = Depends(get_db_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> EntitlementResolver:
    return EntitlementResolver(db, clock)


def get_reconciler(
    db: Session = Depends(get_db_session),
    client: Optional[StripeBillingClient] = Depends(get_processor_client),
    config: AccessControlConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(db, client, config, clock)


def get_cancellation_coordinator(
    db: Session = Depends(get_db_session),
    client: Optional[StripeBillingClient] = Depends(get_processor_client),
    config: AccessControlConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CancellationCoordinator:
    return CancellationCoordinator(db, client, config, clock)


def get_access_tracker(
    db: Session = Depends(get_db_session),
    config: AccessControlConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AccessTracker:
    return AccessTracker(db, config, clock)


def get_rate_limiter(
    db: Session = Depends(get_db_session),
    config: AccessControlConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RateLimiter:
    return RateLimiter(db, config, clock)
