"""
Locate a member's processor subscription.

Lookup order:
1. The stored external_subscription_ref, if any
2. Customers with the member's VERIFIED email -> their subscriptions

Stripe does not enforce unique customer emails. When more than one customer
matches, only subscriptions whose metadata.user_id names this member are
considered. A subscription whose metadata names another member is never
returned.
"""

import logging
from typing import Optional

from gymaccess.integrations.stripe.billing_client import StripeSubscription
from gymaccess.services.processor_boundary import call_processor

logger = logging.getLogger(__name__)

# Subscriptions that still bill or can still be cancelled
LIVE_STATUSES = ("active", "trialing", "past_due", "incomplete", "unpaid")

_PREFERENCE = {
    "active": 0,
    "trialing": 0,
    "past_due": 1,
    "unpaid": 2,
    "incomplete": 3,
}


def _rank(subscription: StripeSubscription) -> tuple:
    created = subscription.created_at.timestamp() if subscription.created_at else 0
    return (_PREFERENCE.get(subscription.status, 9), -created)


def belongs_to(subscription: StripeSubscription, user_id: str) -> bool:
    """Metadata owner matches, or the subscription carries no owner."""
    owner = subscription.user_id
    return owner is None or owner == user_id


class SubscriptionLocator:
    """Finds the subscription backing a member's managed membership."""

    def __init__(self, billing_client):
        self.client = billing_client

    async def by_reference(self, subscription_ref: str) -> Optional[StripeSubscription]:
        return await call_processor(
            "get_subscription", self.client.get_subscription(subscription_ref)
        )

    async def by_email(
        self,
        user_id: str,
        email: Optional[str],
        email_verified: bool,
        live_only: bool = False,
    ) -> Optional[StripeSubscription]:
        """
        Best matching subscription among customers sharing the member's email.

        Returns None without calling the processor when the email is missing
        or unverified.
        """
        if not email or not email_verified:
            logger.info("Skipping email subscription lookup, no verified email", extra={
                "user_id": user_id,
            })
            return None

        customers = await call_processor("list_customers", self.client.list_customers(email))
        if not customers:
            return None

        ambiguous = len(customers) > 1
        if ambiguous:
            logger.warning("Multiple processor customers share an email", extra={
                "user_id": user_id,
                "customer_count": len(customers),
            })

        candidates = []
        for customer in customers:
            subscriptions = await call_processor(
                "list_subscriptions", self.client.list_subscriptions(customer.id)
            )
            for subscription in subscriptions:
                if ambiguous and subscription.user_id != user_id:
                    continue
                if not belongs_to(subscription, user_id):
                    continue
                if live_only and subscription.status not in LIVE_STATUSES:
                    continue
                candidates.append(subscription)

        if not candidates:
            return None

        return sorted(candidates, key=_rank)[0]

    async def find(
        self,
        user_id: str,
        email: Optional[str],
        email_verified: bool,
        subscription_ref: Optional[str] = None,
        live_only: bool = False,
    ) -> Optional[StripeSubscription]:
        """
        Resolve by reference first, then by verified email.

        Raises:
            ProcessorUnavailableError: If a required processor call fails
        """
        if subscription_ref:
            subscription = await self.by_reference(subscription_ref)
            if subscription is not None and belongs_to(subscription, user_id):
                if not live_only or subscription.status in LIVE_STATUSES:
                    return subscription
            logger.info("Subscription reference did not resolve, falling back to email", extra={
                "user_id": user_id,
                "subscription_ref": subscription_ref,
            })

        return await self.by_email(user_id, email, email_verified, live_only=live_only)
