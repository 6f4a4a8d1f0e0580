"""Campaign Dialer Exception Hierarchy.

Provides structured error handling with context preservation
and proper HTTP status code mapping.
"""

from __future__ import annotations

from typing import Any


class DialerError(Exception):
    """Base exception for all dialer errors.

    Provides:
    - Structured error context
    - HTTP status code mapping
    - Logging-friendly representation
    """

    status_code: int = 500
    error_code: str = "DIALER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Additional context for debugging
            cause: Original exception if wrapping
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to API-friendly dictionary."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        """String representation for logging."""
        parts = [f"{self.error_code}: {self.message}"]
        if self.details:
            parts.append(f"details={self.details}")
        if self.cause:
            parts.append(f"cause={self.cause}")
        return " | ".join(parts)


# =============================================================================
# Data Errors
# =============================================================================


class DatabaseError(DialerError):
    """Database access failed."""

    status_code = 503
    error_code = "DATABASE_ERROR"


class NotFoundError(DialerError):
    """Requested record not found."""

    status_code = 404
    error_code = "RECORD_NOT_FOUND"


class LeadNotFoundError(NotFoundError):
    error_code = "LEAD_NOT_FOUND"


class CampaignNotFoundError(NotFoundError):
    error_code = "CAMPAIGN_NOT_FOUND"


class NumberNotFoundError(NotFoundError):
    error_code = "NUMBER_NOT_FOUND"


class JobNotFoundError(NotFoundError):
    error_code = "JOB_NOT_FOUND"


class ValidationError(DialerError):
    """Input data failed validation."""

    status_code = 422
    error_code = "VALIDATION_ERROR"


class ConfigurationError(DialerError):
    """Required configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(DialerError):
    """The telephony provider rejected or failed a request.

    ``transient`` marks failures worth retrying later (timeouts, network
    errors, rate limiting, provider-side 5xx).
    """

    status_code = 502
    error_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        provider_status: int | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, details=details, cause=cause)
        self.transient = transient
        self.provider_status = provider_status


class CallNotFoundError(ProviderError):
    """Provider has no record of the requested call."""

    status_code = 404
    error_code = "PROVIDER_CALL_NOT_FOUND"


class AnalysisError(DialerError):
    """The external analysis service failed."""

    status_code = 502
    error_code = "ANALYSIS_ERROR"


# =============================================================================
# Compliance Errors
# =============================================================================


class ComplianceCheckError(DialerError):
    """Admission control could not evaluate a lead."""

    error_code = "COMPLIANCE_CHECK_ERROR"


# =============================================================================
# Job Errors
# =============================================================================


class JobError(DialerError):
    """A job handler failed.

    ``retryable=False`` fails the job immediately regardless of its
    remaining attempts.
    """

    error_code = "JOB_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, details=details, cause=cause)
        self.retryable = retryable


class UnknownJobError(JobError):
    error_code = "UNKNOWN_JOB"

    def __init__(self, name: str) -> None:
        super().__init__(f"No handler registered for job '{name}'", retryable=False)


# =============================================================================
# Authentication & Authorization Errors
# =============================================================================


class AuthError(DialerError):
    """Base class for authentication/authorization errors."""

    status_code = 401
    error_code = "AUTH_ERROR"


class WebhookSignatureError(AuthError):
    """Webhook signature validation failed."""

    error_code = "INVALID_SIGNATURE"


class AuthenticationError(AuthError):
    """Bearer token missing, expired or invalid."""

    error_code = "UNAUTHORIZED"


class AuthorizationError(AuthError):
    """Authenticated identity lacks the required role."""

    status_code = 403
    error_code = "FORBIDDEN"
