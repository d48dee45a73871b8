from __future__ import annotations


class AppointmentNotifyError(Exception):
    """Base error for apptnotify.

    Every subclass carries the HTTP status and stable error code used when the
    security pipeline renders it into the error envelope.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or "Request failed")
        self.message = message or "Request failed"
        if code is not None:
            self.code = code


class AuthError(AppointmentNotifyError):
    """Missing, malformed, or invalid credential."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class PermissionDeniedError(AppointmentNotifyError):
    """Authenticated caller lacks a permitted role."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class ValidationError(AppointmentNotifyError):
    """Request input failed validation."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppointmentNotifyError):
    """Requested resource does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class IdempotencyConflict(AppointmentNotifyError):
    """Idempotency key reused with a different request, or still in flight."""

    status_code = 409
    code = "IDEMPOTENCY_KEY_CONFLICT"


class ConflictError(AppointmentNotifyError):
    """Request conflicts with the current state of the resource."""

    status_code = 409
    code = "CONFLICT"


class RateLimitExceeded(AppointmentNotifyError):
    """Caller exceeded the request budget for the current window."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str | None = None, *, retry_after_s: int = 1, reset_at: int | None = None) -> None:
        super().__init__(message or "Rate limit exceeded")
        self.retry_after_s = max(1, int(retry_after_s))
        self.reset_at = reset_at


class RateLimitUnavailable(AppointmentNotifyError):
    """Rate-limit storage is unavailable and the limiter fails closed."""

    status_code = 503
    code = "RATE_LIMIT_UNAVAILABLE"


class InternalError(AppointmentNotifyError):
    """Unexpected failure; details are logged, never returned."""

    status_code = 500
    code = "INTERNAL_ERROR"


class ProviderError(AppointmentNotifyError):
    """Channel provider failure."""

    retryable: bool = False

    def __init__(self, message: str | None = None, *, suppress_kind: str | None = None) -> None:
        super().__init__(message or "Provider failure")
        # Non-null when the failure proves the recipient can never be reached.
        self.suppress_kind = suppress_kind


class TransientProviderError(ProviderError):
    """Retryable provider failure (timeouts, 5xx, throttling)."""

    retryable = True


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure; may trigger suppression."""

    retryable = False


class ProviderConfigError(AppointmentNotifyError):
    """Missing or invalid provider configuration."""


class DirectoryError(AppointmentNotifyError):
    """Booking service lookup failure."""
