"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
admission API, the dispatch worker and the webhook reconciler.

API-facing exceptions carry an HTTP status and serialize to the standard
``{"error": {"code", "message", "details"}}`` envelope. Worker-facing
exceptions (configuration, decryption, data integrity) are never shown to a
caller - the worker records them on the message row.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"

    # Authentication
    AUTH_MISSING_HEADER = "AUTH_MISSING_HEADER"
    AUTH_INVALID_FORMAT = "AUTH_INVALID_FORMAT"
    AUTH_INVALID_KEY = "AUTH_INVALID_KEY"

    # Dispatch (recorded on messages, not returned by the API)
    CONNECTOR_CONFIGURATION = "CONNECTOR_CONFIGURATION"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    CREDENTIAL_DECRYPTION = "CREDENTIAL_DECRYPTION"
    DATA_INTEGRITY = "DATA_INTEGRITY"

    # External services
    EXTERNAL_SERVICE_UNAVAILABLE = "EXTERNAL_SERVICE_UNAVAILABLE"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is missing or outside the caller's project"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} with ID '{identifier}' not found or does not belong to your project",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class UnauthorizedException(AppException):
    """Missing or malformed credentials (401)"""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.UNAUTHORIZED):
        super().__init__(message=message, error_code=error_code, status_code=401)


class ForbiddenException(AppException):
    """Credentials present but not accepted for this resource (403)"""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.FORBIDDEN):
        super().__init__(message=message, error_code=error_code, status_code=403)


class RateLimitExceededError(AppException):
    """Raised when an API key exceeds its request budget"""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        retry_after_seconds: int,
        headers: dict[str, str] | None = None
    ):
        super().__init__(
            message="Too many requests, please try again later",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={
                "limit": limit,
                "window_seconds": window_seconds,
                "retry_after_seconds": retry_after_seconds,
            }
        )
        self.retry_after_seconds = retry_after_seconds
        # extra response headers (X-RateLimit-*)
        self.headers = headers or {}


# ── Dispatch errors ──
# Fatal for the job: retrying cannot fix a bad configuration.


class DispatchError(AppException):
    """Base exception for errors raised while dispatching a message"""

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=500,
            details=details
        )


class ConnectorConfigurationError(DispatchError):
    """Connector credentials are missing required fields"""

    def __init__(self, provider_type: str, missing_fields: list[str]):
        super().__init__(
            message=(
                f"{provider_type} connector is missing required credentials: "
                f"{', '.join(missing_fields)}"
            ),
            error_code=ErrorCode.CONNECTOR_CONFIGURATION,
            details={"provider_type": provider_type, "missing_fields": missing_fields}
        )


class UnsupportedProviderError(DispatchError):
    """No connector is registered for the provider type"""

    def __init__(self, provider_type: str):
        super().__init__(
            message=f"Unsupported provider type: {provider_type}",
            error_code=ErrorCode.UNSUPPORTED_PROVIDER,
            details={"provider_type": provider_type}
        )


class CredentialDecryptionError(DispatchError):
    """The vault could not decrypt a credentials blob"""

    def __init__(self, message: str = "Failed to decrypt connector credentials"):
        super().__init__(
            message=message,
            error_code=ErrorCode.CREDENTIAL_DECRYPTION,
        )


class DataIntegrityError(DispatchError):
    """A row referenced by a message vanished after admission"""

    def __init__(self, resource: str, identifier: Any, message_id: str):
        super().__init__(
            message=f"{resource} {identifier} referenced by message {message_id} no longer exists",
            error_code=ErrorCode.DATA_INTEGRITY,
            details={
                "resource": resource,
                "identifier": str(identifier),
                "message_id": message_id,
            }
        )


# ── External service errors ──


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class ProviderResponseError(ExternalServiceException):
    """A provider answered with a non-success HTTP status"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} API error: {message}",
            details=details
        )

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "ProviderResponseError":
        """
        Build a ProviderResponseError from an HTTP response.

        Args:
            service_name: provider tag (telegram, twilio_sms, ...)
            operation: provider operation (sendMessage, Messages.json, ...)
            response: response object (e.g. httpx.Response)
            message: override for the generated message
            max_response_chars: cap on the stored response body
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name=service_name,
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
