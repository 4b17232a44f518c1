"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API and the webhook receivers
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No sensitive data leaks in error messages (OWASP A04)

Webhook providers retry on any non-2xx response, so the status code
chosen here decides whether a delivery is retried. Client mistakes
(bad signature, malformed body) are 4xx; our own failures are 5xx.

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        WHY: The frontend checks `success` on every billing response, so
        errors use the same envelope as successful payloads.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        # WHY: Filter out sensitive fields to prevent data leaks
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "success": False,
            "error": self.message,
            "code": self.__class__.__name__,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication Exceptions (OWASP A07)
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when a session cannot be authenticated.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication required"


class TokenExpiredError(AuthenticationError):
    """
    Raised when the session JWT has expired.

    WHY: Lets the frontend trigger a session refresh instead of a full
    sign-out.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Token has expired"


class TokenInvalidError(AuthenticationError):
    """
    Raised when the session JWT is malformed or has an invalid signature.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Token is invalid"


class WebhookSignatureError(AuthenticationError):
    """
    Raised when a webhook delivery cannot be proven to come from the provider.

    WHY: Unsigned or forged deliveries must never mutate subscription state.
    Cashfree deliveries are rejected with 401. The Stripe receiver raises
    this with status_code=400, which is what Stripe's own tooling expects.

    HTTP Status: 401 Unauthorized (default)
    """

    default_message = "Invalid webhook signature"


# ============================================================================
# Validation & Input Exceptions (OWASP A03)
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation or a billing precondition fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class MalformedPayloadError(ValidationError):
    """
    Raised when a webhook body is not UTF-8, not JSON, or missing the
    references a recognized event needs.

    WHY: Kept apart from signature failures so logs tell a broken
    integration from a forged request.

    HTTP Status: 400 Bad Request
    """

    default_message = "Malformed payload"


class PlanNotConfiguredError(ValidationError):
    """
    Raised when a paid plan has no provider price configured.

    HTTP Status: 400 Bad Request
    """

    default_message = "Plan is not available for purchase"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Raised when the caller has no matching current subscription."""

    default_message = "No active subscription found"


# ============================================================================
# External Service Exceptions (OWASP A08)
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for payment provider API failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class StripeError(ExternalServiceError):
    """Raised when Stripe API calls fail."""

    default_message = "Payment processing error"


class CashfreeError(ExternalServiceError):
    """Raised when Cashfree API calls fail."""

    default_message = "Cashfree payment gateway error"


# ============================================================================
# Database Exceptions
# ============================================================================


class DatabaseError(AppException):
    """
    Raised when database operations fail.

    WHY: A webhook that could not be persisted must answer 5xx so the
    provider redelivers it. The message never exposes SQL.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Database error"
