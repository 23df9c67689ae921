"""
Stripe integration module.
"""

from gymaccess.integrations.stripe.billing_client import StripeBillingClient

__all__ = ["StripeBillingClient"]
