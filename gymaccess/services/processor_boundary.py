"""
Single point where payment-processor failures become domain errors.

Stripe reports failures in several shapes: a nested {"error": {"message"}}
body, a flat {"message"} body, or plain response text, plus transport-level
timeouts with no body at all. They are all reduced here to
ProcessorUnavailableError; nothing past the reconciler or the cancellation
coordinator inspects a StripeAPIError.
"""

import logging
from typing import Awaitable, TypeVar

from gymaccess.errors import ProcessorUnavailableError
from gymaccess.integrations.stripe.billing_client import StripeAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Worth retrying later: transport failures, rate limits, lock conflicts, 5xx
TRANSIENT_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})


def extract_processor_message(error: BaseException) -> str:
    """Best-effort human-readable message from any processor error shape."""
    response = getattr(error, "response", None)

    if isinstance(response, dict):
        nested = response.get("error")
        if isinstance(nested, dict) and nested.get("message"):
            return str(nested["message"])
        if isinstance(nested, str) and nested:
            return nested
        if response.get("message"):
            return str(response["message"])
    elif isinstance(response, str) and response.strip():
        return response.strip()[:500]

    return str(error) or type(error).__name__


def is_transient(error: BaseException) -> bool:
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        return True
    return status_code in TRANSIENT_STATUS_CODES


def normalize_processor_error(error: BaseException, operation: str) -> ProcessorUnavailableError:
    """
    Convert a processor exception into the domain taxonomy.

    Args:
        error: Raised StripeAPIError (or transport error)
        operation: Processor operation name for logs (e.g. "cancel_at_period_end")

    Returns:
        ProcessorUnavailableError with retryable set from the failure class
    """
    retryable = is_transient(error)
    detail = extract_processor_message(error)

    logger.warning("Payment processor call failed", extra={
        "operation": operation,
        "status_code": getattr(error, "status_code", None),
        "retryable": retryable,
        "detail": detail,
    })

    message = None if retryable else "Payment provider rejected the request."
    return ProcessorUnavailableError(
        message=message,
        cause=error,
        retryable=retryable,
        operation=operation,
    )


async def call_processor(operation: str, call: Awaitable[T]) -> T:
    """
    Await a processor call, translating its failures.

    Usage:
        sub = await call_processor("get_subscription", client.get_subscription(ref))
    """
    try:
        return await call
    except StripeAPIError as e:
        raise normalize_processor_error(e, operation) from e


def require_client(client, operation: str):
    """Fail cleanly when the processor is needed but not configured."""
    if client is None:
        logger.error("Payment processor not configured", extra={"operation": operation})
        raise ProcessorUnavailableError(
            message="Payment provider is not configured.",
            retryable=False,
            operation=operation,
        )
    return client
