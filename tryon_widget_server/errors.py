"""
Error catalogue and exception hierarchy for the widget API.

Every externally visible error has a stable code, an HTTP status, a technical
message and a message safe to show to shoppers. Services raise ``WidgetError``
subclasses; the API layer renders them into the standard envelope::

    {"success": false,
     "error": {"code": ..., "message": ..., "userMessage": ..., "requestId": ...}}
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import status


@dataclass(frozen=True)
class ErrorDefinition:
    """Static description of an error code"""
    code: str
    http_status: int
    message: str
    user_message: str


_DEFINITIONS = [
    # Authentication & authorization
    ErrorDefinition(
        "MISSING_MERCHANT_KEY", status.HTTP_401_UNAUTHORIZED,
        "X-Merchant-Key header is required",
        "Authentication failed. Please check your API key.",
    ),
    ErrorDefinition(
        "INVALID_MERCHANT_KEY", status.HTTP_401_UNAUTHORIZED,
        "The merchant API key is invalid or has been revoked",
        "Authentication failed. Please check your API key.",
    ),
    ErrorDefinition(
        "DOMAIN_NOT_ALLOWED", status.HTTP_403_FORBIDDEN,
        "Request origin is not in the merchant's allowed domains",
        "This domain is not authorized to use the widget.",
    ),
    ErrorDefinition(
        "ACCESS_DENIED", status.HTTP_403_FORBIDDEN,
        "Access denied to this resource",
        "You do not have permission to access this resource.",
    ),
    # Rate limiting & quota
    ErrorDefinition(
        "RATE_LIMIT_EXCEEDED", status.HTTP_429_TOO_MANY_REQUESTS,
        "Too many requests",
        "Too many requests. Please wait a moment and try again.",
    ),
    ErrorDefinition(
        "QUOTA_EXCEEDED", status.HTTP_402_PAYMENT_REQUIRED,
        "Monthly try-on quota has been reached",
        "Monthly limit reached. Please upgrade your plan.",
    ),
    # Validation
    ErrorDefinition(
        "VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST,
        "Request validation failed",
        "Please check your input and try again.",
    ),
    ErrorDefinition(
        "MISSING_PHOTO", status.HTTP_400_BAD_REQUEST,
        "Photo data or URL is required",
        "Please provide a photo to try on.",
    ),
    ErrorDefinition(
        "INVALID_USER_IMAGE", status.HTTP_400_BAD_REQUEST,
        "User photo is invalid or unprocessable",
        "Unable to process your photo. Please try a different image.",
    ),
    ErrorDefinition(
        "INVALID_PRODUCT_IMAGE", status.HTTP_400_BAD_REQUEST,
        "Product image URL is unreachable or invalid",
        "Unable to load the product image. Please try a different image.",
    ),
    ErrorDefinition(
        "IMAGE_TOO_LARGE", status.HTTP_400_BAD_REQUEST,
        "Image file exceeds maximum size",
        "Image is too large. Please use an image under 10MB.",
    ),
    ErrorDefinition(
        "INVALID_DOMAIN_FORMAT", status.HTTP_400_BAD_REQUEST,
        "Domain format is invalid",
        "Use format: example.com or *.example.com",
    ),
    ErrorDefinition(
        "INVALID_KEY_TYPE", status.HTTP_400_BAD_REQUEST,
        "Key type must be live, test, or both",
        "Invalid key type specified.",
    ),
    # Sessions
    ErrorDefinition(
        "SESSION_NOT_FOUND", status.HTTP_404_NOT_FOUND,
        "Session not found",
        "Session not found. Please start a new try-on.",
    ),
    ErrorDefinition(
        "SESSION_EXPIRED", status.HTTP_410_GONE,
        "Session has expired",
        "Your session has expired. Please start over.",
    ),
    ErrorDefinition(
        "TRY_ON_LIMIT_REACHED", status.HTTP_409_CONFLICT,
        "Session has used all of its try-on attempts",
        "You have used all try-ons for this item.",
    ),
    ErrorDefinition(
        "SESSION_PROCESSING", status.HTTP_409_CONFLICT,
        "Session is currently being processed",
        "Your try-on is still processing. Please wait.",
    ),
    ErrorDefinition(
        "SESSION_ALREADY_COMPLETED", status.HTTP_409_CONFLICT,
        "Session has already been processed",
        "This try-on has already been completed.",
    ),
    ErrorDefinition(
        "INVALID_SESSION_STATE", status.HTTP_409_CONFLICT,
        "Session cannot accept a try-on in its current state",
        "This try-on can no longer be used. Please start a new one.",
    ),
    # Merchants
    ErrorDefinition(
        "MERCHANT_NOT_FOUND", status.HTTP_404_NOT_FOUND,
        "Merchant not found",
        "Account not found.",
    ),
    ErrorDefinition(
        "EMAIL_EXISTS", status.HTTP_409_CONFLICT,
        "An account with this email already exists",
        "This email is already registered. Please log in instead.",
    ),
    ErrorDefinition(
        "DOMAIN_EXISTS", status.HTTP_409_CONFLICT,
        "Domain already in the whitelist",
        "This domain is already added.",
    ),
    ErrorDefinition(
        "DOMAIN_NOT_FOUND", status.HTTP_404_NOT_FOUND,
        "Domain not found in whitelist",
        "Domain not found.",
    ),
    # Processing
    ErrorDefinition(
        "PROCESSING_FAILED", status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Try-on generation failed",
        "Unable to generate try-on. Please try again.",
    ),
    ErrorDefinition(
        "INTERNAL_ERROR", status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An internal server error occurred",
        "Something went wrong. Please try again later.",
    ),
]

ERROR_DEFINITIONS: Dict[str, ErrorDefinition] = {d.code: d for d in _DEFINITIONS}


def get_error_definition(code: str) -> ErrorDefinition:
    """Look up an error code, falling back to INTERNAL_ERROR"""
    return ERROR_DEFINITIONS.get(code, ERROR_DEFINITIONS["INTERNAL_ERROR"])


class WidgetError(Exception):
    """Base exception for all errors surfaced through the widget API."""

    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        definition = get_error_definition(code or self.default_code)
        self.code = definition.code
        self.http_status = definition.http_status
        self.message = message or definition.message
        self.user_message = definition.user_message
        self.details = details
        self.headers = headers or {}
        super().__init__(self.message)

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Render the ``error`` member of the response envelope"""
        error = {
            "code": self.code,
            "message": self.message,
            "userMessage": self.user_message,
            "requestId": request_id,
        }
        if self.details is not None:
            error["details"] = self.details
        return error


class AuthenticationError(WidgetError):
    """Bad, missing or revoked key, or a disallowed origin."""
    default_code = "INVALID_MERCHANT_KEY"


class RateLimitExceededError(WidgetError):
    default_code = "RATE_LIMIT_EXCEEDED"


class ValidationError(WidgetError):
    """Malformed request payload."""
    default_code = "VALIDATION_ERROR"


class QuotaExceededError(WidgetError):
    default_code = "QUOTA_EXCEEDED"


class SessionError(WidgetError):
    """Session lookup or state-machine rejection."""
    default_code = "SESSION_NOT_FOUND"


class ImageError(WidgetError):
    default_code = "INVALID_USER_IMAGE"


class ProcessingError(WidgetError):
    """The image generation provider failed or timed out."""
    default_code = "PROCESSING_FAILED"


class ConflictError(WidgetError):
    default_code = "EMAIL_EXISTS"


class NotFoundError(WidgetError):
    default_code = "MERCHANT_NOT_FOUND"


def error_envelope(error: WidgetError, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Build the failure envelope for an error"""
    return {"success": False, "error": error.to_dict(request_id)}


def success_envelope(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Build the success envelope"""
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body
