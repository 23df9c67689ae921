"""
Unit tests for processor error normalization.
"""

import pytest

from gymaccess.errors import ProcessorUnavailableError
from gymaccess.integrations.stripe.billing_client import StripeAPIError
from gymaccess.services.processor_boundary import (
    call_processor,
    extract_processor_message,
    is_transient,
    normalize_processor_error,
    require_client,
)


class TestExtractMessage:

    def test_nested_error_message(self):
        error = StripeAPIError("HTTP 400", status_code=400, response={"error": {"message": "Card declined"}})
        assert extract_processor_message(error) == "Card declined"

    def test_error_as_string(self):
        error = StripeAPIError("HTTP 400", status_code=400, response={"error": "invalid_request"})
        assert extract_processor_message(error) == "invalid_request"

    def test_flat_message(self):
        error = StripeAPIError("HTTP 500", status_code=500, response={"message": "Internal failure"})
        assert extract_processor_message(error) == "Internal failure"

    def test_raw_text_body(self):
        error = StripeAPIError("HTTP 502", status_code=502, response="  <html>Bad gateway</html> ")
        assert extract_processor_message(error) == "<html>Bad gateway</html>"

    def test_falls_back_to_exception_text(self):
        assert extract_processor_message(StripeAPIError("Request timeout")) == "Request timeout"


class TestClassification:

    @pytest.mark.parametrize("status_code", [None, 409, 429, 500, 502, 503, 504])
    def test_transient(self, status_code):
        assert is_transient(StripeAPIError("x", status_code=status_code)) is True

    @pytest.mark.parametrize("status_code", [400, 401, 402, 403, 404])
    def test_permanent(self, status_code):
        assert is_transient(StripeAPIError("x", status_code=status_code)) is False

    def test_permanent_error_gets_generic_message(self):
        error = normalize_processor_error(
            StripeAPIError("No such subscription", status_code=404), "cancel_at_period_end"
        )

        assert error.retryable is False
        assert error.operation == "cancel_at_period_end"
        assert error.message == "Payment provider rejected the request."
        assert error.to_dict() == {
            "error": "processor_unavailable",
            "message": "Payment provider rejected the request.",
            "retryable": False,
        }

    def test_transient_error_keeps_default_message(self):
        error = normalize_processor_error(StripeAPIError("timeout"), "get_subscription")

        assert error.retryable is True
        assert error.message == ProcessorUnavailableError.default_message


class TestCallProcessor:

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        async def ok():
            return "sub_123"

        assert await call_processor("get_subscription", ok()) == "sub_123"

    @pytest.mark.asyncio
    async def test_translates_stripe_errors(self):
        async def failing():
            raise StripeAPIError("down", status_code=503)

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await call_processor("get_subscription", failing())

        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.cause, StripeAPIError)

    def test_require_client(self):
        client = object()
        assert require_client(client, "op") is client

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            require_client(None, "op")
        assert exc_info.value.retryable is False
