"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API and background jobs
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No secrets in error payloads
5. A clear split between "fix the config" failures and "try again later"
   provider failures, which the reconciliation sweep relies on

IMPORTANT: NEVER raise the base Exception class. Always use these.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and keeps secrets out of
    error messages.
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

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


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


class UserNotFoundError(ResourceNotFoundError):
    """Raised when a user (or the user behind a provider customer) doesn't exist."""

    default_message = "User not found"


class PlanNotFoundError(ResourceNotFoundError):
    """
    Raised when a plan name is absent from the plan catalog.

    WHY: A deprecated plan referenced by an old subscription must fail
    loudly instead of being silently recreated with guessed values.
    """

    default_message = "Plan not found"


class WorkspaceNotFoundError(ResourceNotFoundError):
    """Raised when a workspace doesn't exist."""

    default_message = "Workspace not found"


class ConflictError(AppException):
    """
    Raised when a write loses a uniqueness race twice in a row.

    WHY: The reconciler retries a lost insert once through the update path.
    Only a second conflict reaches the caller.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Concurrent modification conflict"


# ============================================================================
# Configuration Exceptions
# ============================================================================


class ConfigurationError(AppException):
    """
    Raised when local configuration cannot interpret provider data.

    WHY: An unmapped price id or an unknown status means our config is out
    of step with the provider. Guessing a plan would grant or deny the wrong
    entitlements, so the attempt aborts and an operator has to fix config.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Billing configuration error"


class UnknownPriceError(ConfigurationError):
    """Raised when a provider price id maps to no configured plan."""

    default_message = "Unknown price identifier"


class UnsupportedStatusError(ConfigurationError):
    """Raised when the provider reports a subscription status we don't model."""

    default_message = "Unsupported subscription status"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class StripeError(ExternalServiceError):
    """
    Raised when Stripe API calls fail for non-transient reasons.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment provider error"


class TransientProviderError(StripeError):
    """
    Raised on network failures, timeouts, rate limits and provider 5xx.

    WHY: These are safe to retry. The sweep marks them retryable and the
    next scheduled run picks them up; nothing retries inline.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Payment provider temporarily unavailable"


class ProviderResourceNotFoundError(ResourceNotFoundError):
    """Raised when the provider has no object with the requested id."""

    default_message = "Provider resource not found"


# ============================================================================
# Webhook Exceptions
# ============================================================================


class WebhookSignatureError(AppException):
    """
    Raised when a webhook payload fails signature verification.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid webhook signature"
