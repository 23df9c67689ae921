"""
Stripe Billing API client for managed membership subscriptions.

Uses the Stripe REST API (form-encoded requests, JSON responses) for
customers, hosted subscription checkout and subscription updates.

Documentation: https://docs.stripe.com/api
"""

import asyncio
import os
import logging
import uuid
from typing import Optional, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_API_BASE = "https://api.stripe.com"
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class RetryConfig:
    """
    Retry policy for transient Stripe failures.

    Timeouts, connection errors and the status codes below are retried;
    every other failure propagates on the first attempt.
    """
    max_retries: int = 1
    initial_delay: float = 0.5
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple = (409, 429, 500, 502, 503, 504)

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)


@dataclass
class StripeCustomer:
    """A Stripe Customer object."""
    id: str
    email: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class StripeSubscription:
    """Represents a Stripe Subscription from the API."""
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id")

    @property
    def plan_id(self) -> Optional[str]:
        return self.metadata.get("plan_id")


@dataclass
class CheckoutSession:
    """A hosted checkout session the member is redirected to."""
    id: str
    url: str
    customer_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class StripeBillingError(Exception):
    """Base exception for Stripe Billing API errors."""
    pass


class StripeAPIError(StripeBillingError):
    """Error communicating with the Stripe API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Any] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response = response
        self.retry_after = retry_after


def _from_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _encode_form(params: dict, prefix: str = "") -> list:
    """
    Flatten nested params into Stripe's bracketed form encoding.

    {"metadata": {"user_id": "u1"}} -> [("metadata[user_id]", "u1")]
    """
    items = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            items.extend(_encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, element in enumerate(value):
                element_name = f"{name}[{index}]"
                if isinstance(element, dict):
                    items.extend(_encode_form(element, element_name))
                else:
                    items.append((element_name, str(element)))
        elif isinstance(value, bool):
            items.append((name, "true" if value else "false"))
        else:
            items.append((name, str(value)))
    return items


def _parsed(parser, data, path: str):
    """Apply a response parser; a malformed object becomes a StripeAPIError."""
    try:
        return parser(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.error("Stripe API response has unexpected shape", extra={
            "path": path,
            "error": repr(e),
        })
        raise StripeAPIError(f"Unexpected response shape: {e!r}", response=data)


def parse_customer(data: dict) -> StripeCustomer:
    return StripeCustomer(id=data["id"], email=data.get("email"), metadata=dict(data.get("metadata") or {}))


def parse_subscription(data: dict) -> StripeSubscription:
    period_end = data.get("current_period_end")
    if period_end is None:
        # Newer API versions report the period on each subscription item
        items = (data.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
        period_end = max(ends) if ends else None

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return StripeSubscription(
        id=data["id"],
        status=data.get("status", ""),
        customer_id=customer,
        current_period_end=_from_timestamp(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        created_at=_from_timestamp(data.get("created")),
        metadata=dict(data.get("metadata") or {}),
    )


class StripeBillingClient:
    """
    Client for Stripe Billing API operations.

    Handles:
    - Finding and creating customers
    - Opening hosted subscription checkout sessions
    - Querying subscription status
    - Scheduling cancellation at period end

    SECURITY: The secret key is read from the environment and never logged.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_STRIPE_API_BASE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize billing client.

        Args:
            api_key: Stripe secret key
            api_base: API root (overridable for stripe-mock in tests)
            timeout_seconds: Per-request timeout
            retry_config: Retry policy for transient failures
        """
        if not api_key:
            raise ValueError("api_key is required")

        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_config = retry_config or RetryConfig()

        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0)),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/x-www-form-urlencoded",
            }
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _is_retryable(self, error: StripeAPIError) -> bool:
        if error.status_code is None:
            return True  # timeout or connection error
        return error.status_code in self.retry_config.retryable_status_codes

    @staticmethod
    def _error_message(response: httpx.Response) -> tuple:
        """Extract (message, code, parsed body) from an error response."""
        try:
            body = response.json()
        except ValueError:
            return (response.text[:500] or f"HTTP {response.status_code}", None, response.text)

        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return (error.get("message") or f"HTTP {response.status_code}", error.get("code"), body)
            if isinstance(body.get("message"), str):
                return (body["message"], body.get("code"), body)
        return (f"HTTP {response.status_code}", None, body)

    async def _request_raw(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Execute a single Stripe API request with no retry.

        Args:
            method: HTTP method
            path: API path (e.g. /v1/customers)
            params: Query params (GET) or form body (POST)
            idempotency_key: Sent on POST so a retried write is applied once

        Returns:
            Parsed JSON response

        Raises:
            StripeAPIError: If the API call fails
        """
        encoded = _encode_form(params or {})
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            if method == "GET":
                response = await self._client.request(method, path, params=encoded, headers=headers)
            else:
                response = await self._client.request(method, path, data=dict(encoded), headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Stripe API timeout", extra={"path": path, "error": str(e)})
            raise StripeAPIError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise StripeAPIError(f"Request error: {e}")

        if response.status_code == 401:
            logger.error("Stripe API authentication failed", extra={
                "path": path,
                "status_code": response.status_code
            })
            raise StripeAPIError(
                "Authentication failed - API key may be invalid or revoked",
                status_code=401
            )

        if response.status_code == 429:
            retry_after = None
            try:
                retry_after = float(response.headers.get("Retry-After", ""))
            except (TypeError, ValueError):
                retry_after = None
            logger.warning("Stripe API rate limited", extra={"path": path})
            raise StripeAPIError(
                "Rate limited - please retry after a delay",
                status_code=429,
                retry_after=retry_after
            )

        if response.status_code >= 400:
            message, code, body = self._error_message(response)
            logger.error("Stripe API error", extra={
                "path": path,
                "status_code": response.status_code,
                "code": code,
            })
            raise StripeAPIError(
                message,
                status_code=response.status_code,
                code=code,
                response=body
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.error("Stripe API returned a non-JSON body", extra={
                "path": path,
                "status_code": response.status_code,
            })
            raise StripeAPIError(f"Unreadable response body: {e}", response=response.text[:200])

        if not isinstance(body, dict):
            raise StripeAPIError("Unexpected response body", response=body)
        return body

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
    ) -> dict:
        """Execute a request, retrying transient failures per retry_config."""
        idempotency_key = str(uuid.uuid4()) if method == "POST" else None
        attempt = 0

        while True:
            try:
                return await self._request_raw(method, path, params, idempotency_key)
            except StripeAPIError as e:
                if attempt >= self.retry_config.max_retries or not self._is_retryable(e):
                    raise
                delay = self.retry_config.delay_for(attempt, e.retry_after)
                logger.warning("Retrying Stripe request", extra={
                    "path": path,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                    "status_code": e.status_code,
                })
                await asyncio.sleep(delay)
                attempt += 1

    async def list_customers(self, email: str, limit: int = 10) -> list[StripeCustomer]:
        """
        List customers with the given email.

        Stripe does not enforce unique emails; callers must handle >1 result.
        """
        data = await self._request("GET", "/v1/customers", {"email": email, "limit": limit})
        return _parsed(lambda d: [parse_customer(c) for c in d.get("data", [])], data, "/v1/customers")

    async def create_customer(self, email: str, user_id: str) -> StripeCustomer:
        """Create a customer tagged with the member's user id."""
        logger.info("Creating Stripe customer", extra={"user_id": user_id})

        data = await self._request("POST", "/v1/customers", {
            "email": email,
            "metadata": {"user_id": user_id},
        })
        return _parsed(parse_customer, data, "/v1/customers")

    async def create_checkout_session(
        self,
        customer_id: str,
        plan_name: str,
        price_cents: int,
        interval_days: int,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        currency: str = "gbp",
    ) -> CheckoutSession:
        """
        Open a hosted checkout session in subscription mode.

        The subscription bills every interval_days days. metadata is copied
        onto the resulting subscription so lifecycle events can be matched
        back to the member and plan.

        Returns:
            CheckoutSession with the redirect url
        """
        logger.info("Creating Stripe checkout session", extra={
            "customer_id": customer_id,
            "plan_name": plan_name,
            "price_cents": price_cents,
            "interval_days": interval_days,
        })

        data = await self._request("POST", "/v1/checkout/sessions", {
            "mode": "subscription",
            "customer": customer_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency,
                        "unit_amount": price_cents,
                        "product_data": {"name": plan_name},
                        "recurring": {"interval": "day", "interval_count": interval_days},
                    },
                }
            ],
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        })

        return _parsed(
            lambda d: CheckoutSession(
                id=d["id"],
                url=d["url"],
                customer_id=d.get("customer") or customer_id,
                expires_at=_from_timestamp(d.get("expires_at")),
            ),
            data,
            "/v1/checkout/sessions",
        )

    async def list_subscriptions(
        self,
        customer_id: str,
        status: str = "all",
        limit: int = 10
    ) -> list[StripeSubscription]:
        """List a customer's subscriptions, newest first."""
        data = await self._request("GET", "/v1/subscriptions", {
            "customer": customer_id,
            "status": status,
            "limit": limit,
        })
        return _parsed(lambda d: [parse_subscription(s) for s in d.get("data", [])], data, "/v1/subscriptions")

    async def get_subscription(self, subscription_id: str) -> Optional[StripeSubscription]:
        """
        Get subscription details by ID.

        Returns:
            StripeSubscription if found, None otherwise
        """
        try:
            data = await self._request("GET", f"/v1/subscriptions/{subscription_id}")
        except StripeAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return _parsed(parse_subscription, data, f"/v1/subscriptions/{subscription_id}")

    async def cancel_at_period_end(self, subscription_id: str) -> StripeSubscription:
        """
        Schedule a subscription to end when the paid period ends.

        Never cancels immediately; the member keeps access until then.
        """
        logger.info("Scheduling Stripe subscription cancellation", extra={
            "subscription_id": subscription_id
        })

        data = await self._request("POST", f"/v1/subscriptions/{subscription_id}", {
            "cancel_at_period_end": True,
        })
        return _parsed(parse_subscription, data, f"/v1/subscriptions/{subscription_id}")


def get_billing_client() -> StripeBillingClient:
    """
    Factory function to create a StripeBillingClient from the environment.

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not set
    """
    return StripeBillingClient(
        api_key=os.getenv("STRIPE_SECRET_KEY", ""),
        api_base=os.getenv("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE),
        timeout_seconds=float(os.getenv("STRIPE_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))),
    )
