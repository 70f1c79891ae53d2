import httpx
import pytest
from sqlalchemy.exc import OperationalError

from booking_app.domain.bookings.errors import (
    BookingNotFoundError,
    CategorizedError,
    ErrorCategory,
    StaleBookingStateError,
    classify_error,
)


def http_status_error(status_code):
    request = httpx.Request("POST", "https://api.example.com/charge")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class TestClassifyByType:
    def test_sqlalchemy_errors_are_database(self):
        error = OperationalError("UPDATE bookings", {}, Exception("database is locked"))
        categorized = classify_error(error)
        assert categorized.category is ErrorCategory.DATABASE
        assert categorized.is_retryable
        assert categorized.original_error is error

    def test_stale_state_is_retryable(self):
        categorized = classify_error(StaleBookingStateError("b-1", 3))
        assert categorized.category is ErrorCategory.DATABASE
        assert categorized.is_retryable

    def test_not_found_is_not_retryable(self):
        categorized = classify_error(BookingNotFoundError("b-1"))
        assert categorized.category is ErrorCategory.VALIDATION
        assert not categorized.is_retryable

    def test_timeouts(self):
        assert classify_error(httpx.ConnectTimeout("slow")).category is ErrorCategory.TIMEOUT
        assert classify_error(TimeoutError()).category is ErrorCategory.TIMEOUT

    def test_network_errors(self):
        assert classify_error(httpx.ConnectError("refused")).category is ErrorCategory.NETWORK
        assert classify_error(ConnectionResetError()).category is ErrorCategory.NETWORK

    def test_http_status_errors(self):
        assert classify_error(http_status_error(503)).category is ErrorCategory.SERVER
        assert classify_error(http_status_error(503)).is_retryable
        assert classify_error(http_status_error(403)).category is ErrorCategory.AUTH

    def test_categorized_error_passes_through(self):
        error = CategorizedError("card declined", ErrorCategory.PAYMENT, is_retryable=True)
        assert classify_error(error) is error


class TestClassifyByMessage:
    @pytest.mark.parametrize(
        "message, category, retryable",
        [
            ("Stripe payment declined", ErrorCategory.PAYMENT, True),
            ("Calendly API unavailable", ErrorCategory.CALENDLY, True),
            ("Unauthorized request", ErrorCategory.AUTH, False),
            ("Service unavailable", ErrorCategory.SERVER, True),
            ("something odd happened", ErrorCategory.UNKNOWN, False),
        ],
    )
    def test_keywords(self, message, category, retryable):
        categorized = classify_error(Exception(message))
        assert categorized.category is category
        assert categorized.is_retryable is retryable

    def test_first_matching_category_wins(self):
        # "invalid" (validation) is checked before "card" (payment)
        categorized = classify_error(ValueError("Invalid card number"))
        assert categorized.category is ErrorCategory.VALIDATION
        assert not categorized.is_retryable

    def test_non_exception_values(self):
        categorized = classify_error("connection lost")
        assert categorized.category is ErrorCategory.NETWORK
        assert categorized.original_error is None
