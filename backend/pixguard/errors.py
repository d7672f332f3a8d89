"""Error taxonomy shared by the admission gate, ingestion, and moderation queue."""

from __future__ import annotations

from fastapi import status


class PixguardError(Exception):
    """Base class for errors carrying an HTTP status and a stable error code."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.error_code)
        self.detail = detail or self.error_code


class AdmissionRejected(PixguardError):
    """Raised to the uploader when the admission gate turns a request away."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "admission_rejected"

    def __init__(self, error_code: str, detail: str | None = None, *, retry_after: int | None = None) -> None:
        super().__init__(detail or error_code)
        self.error_code = error_code
        self.retry_after = retry_after


class UploadValidationError(PixguardError):
    """Unsupported format, oversized, or empty upload. No task is created."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "invalid_upload"


class UploadBlocked(PixguardError):
    """The client may not upload at all (blacklisted, or public uploads disabled)."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "upload_blocked"


class ProviderError(PixguardError):
    """Base class for failures reported by a moderation provider adapter."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "provider_error"


class ProviderUnavailable(ProviderError):
    """The provider could not be reached; the queue backs off and retries later."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "provider_unavailable"


class ProviderRejected(ProviderError):
    """The provider refused the input; counted as an attempt without backoff."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "provider_rejected"


class MaxRetriesExceeded(PixguardError):
    """A task ran out of attempts and was moved to the terminal error status."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "max_retries_exceeded"


class TaskConflict(PixguardError):
    """A subject already has a moderation task that is not terminal."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "task_conflict"


class TaskNotFound(PixguardError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "task_not_found"


__all__ = [
    "AdmissionRejected",
    "MaxRetriesExceeded",
    "PixguardError",
    "ProviderError",
    "ProviderRejected",
    "ProviderUnavailable",
    "TaskConflict",
    "TaskNotFound",
    "UploadBlocked",
    "UploadValidationError",
]
