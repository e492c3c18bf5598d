"""
Tests for the error catalogue and response envelopes.
"""

import pytest
from tryon_widget_server.errors import (
    ERROR_DEFINITIONS,
    AuthenticationError,
    ConflictError,
    ImageError,
    NotFoundError,
    ProcessingError,
    QuotaExceededError,
    RateLimitExceededError,
    SessionError,
    ValidationError,
    WidgetError,
    error_envelope,
    get_error_definition,
    success_envelope,
)


class TestErrorDefinitions:
    """Test the static catalogue."""

    @pytest.mark.parametrize("code,status", [
        ("MISSING_MERCHANT_KEY", 401),
        ("INVALID_MERCHANT_KEY", 401),
        ("DOMAIN_NOT_ALLOWED", 403),
        ("ACCESS_DENIED", 403),
        ("RATE_LIMIT_EXCEEDED", 429),
        ("QUOTA_EXCEEDED", 402),
        ("VALIDATION_ERROR", 400),
        ("MISSING_PHOTO", 400),
        ("SESSION_NOT_FOUND", 404),
        ("SESSION_EXPIRED", 410),
        ("TRY_ON_LIMIT_REACHED", 409),
        ("PROCESSING_FAILED", 500),
        ("INTERNAL_ERROR", 500),
    ])
    def test_http_status(self, code, status):
        """Test each code maps to its HTTP status."""
        assert get_error_definition(code).http_status == status

    def test_every_definition_has_messages(self):
        """Test technical and user messages are present for every code."""
        for code, definition in ERROR_DEFINITIONS.items():
            assert definition.code == code
            assert definition.message
            assert definition.user_message

    def test_unknown_code_falls_back(self):
        """Test unknown codes resolve to INTERNAL_ERROR."""
        assert get_error_definition("NOT_A_CODE").code == "INTERNAL_ERROR"


class TestWidgetError:
    """Test exception construction and rendering."""

    def test_defaults_from_definition(self):
        """Test message and status come from the catalogue."""
        error = WidgetError("SESSION_EXPIRED")

        assert error.code == "SESSION_EXPIRED"
        assert error.http_status == 410
        assert error.message == "Session has expired"
        assert str(error) == "Session has expired"
        assert error.headers == {}

    def test_custom_message_keeps_user_message(self):
        """Test overriding the technical message only."""
        error = WidgetError("PROCESSING_FAILED", "provider returned 502")

        assert error.message == "provider returned 502"
        assert error.user_message == "Unable to generate try-on. Please try again."

    def test_to_dict_without_details(self):
        """Test details are omitted when absent."""
        error = WidgetError("MISSING_PHOTO")

        assert error.to_dict("req-1") == {
            "code": "MISSING_PHOTO",
            "message": "Photo data or URL is required",
            "userMessage": "Please provide a photo to try on.",
            "requestId": "req-1",
        }

    def test_to_dict_with_details(self):
        """Test details are included when given."""
        error = ValidationError(details=[{"field": "product.name"}])

        assert error.to_dict()["details"] == [{"field": "product.name"}]

    @pytest.mark.parametrize("cls,code", [
        (AuthenticationError, "INVALID_MERCHANT_KEY"),
        (RateLimitExceededError, "RATE_LIMIT_EXCEEDED"),
        (ValidationError, "VALIDATION_ERROR"),
        (QuotaExceededError, "QUOTA_EXCEEDED"),
        (SessionError, "SESSION_NOT_FOUND"),
        (ImageError, "INVALID_USER_IMAGE"),
        (ProcessingError, "PROCESSING_FAILED"),
        (ConflictError, "EMAIL_EXISTS"),
        (NotFoundError, "MERCHANT_NOT_FOUND"),
    ])
    def test_subclass_default_codes(self, cls, code):
        """Test each subclass picks its default code."""
        error = cls()

        assert isinstance(error, WidgetError)
        assert error.code == code

    def test_subclass_accepts_specific_code(self):
        """Test a subclass can raise a sibling code."""
        error = AuthenticationError("DOMAIN_NOT_ALLOWED")

        assert error.http_status == 403


class TestEnvelopes:
    """Test response envelopes."""

    def test_error_envelope(self):
        """Test the failure envelope shape."""
        envelope = error_envelope(QuotaExceededError(), "req-9")

        assert envelope["success"] is False
        assert envelope["error"]["code"] == "QUOTA_EXCEEDED"
        assert envelope["error"]["requestId"] == "req-9"

    def test_success_envelope_with_data(self):
        """Test data and message are included."""
        assert success_envelope({"id": 1}, "done") == {
            "success": True,
            "data": {"id": 1},
            "message": "done",
        }

    def test_success_envelope_bare(self):
        """Test empty members are omitted."""
        assert success_envelope() == {"success": True}
