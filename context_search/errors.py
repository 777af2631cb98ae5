"""Error taxonomy shared by the pipeline, its clients and the HTTP surface."""

from __future__ import annotations

from typing import Any


class ContextSearchError(RuntimeError):
    """Base class for failures that carry a user-facing message."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        details: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        if self.retry_after is not None:
            payload["retry_after_ms"] = round(self.retry_after * 1000)
        return payload


class QueryValidationError(ContextSearchError):
    """Raised for missing or malformed caller input. Never retried."""

    status_code = 400


class ClientRateLimited(ContextSearchError):
    """Raised when a caller exceeds the inbound request rate."""

    status_code = 429


class UpstreamError(ContextSearchError):
    """Failure talking to an external service."""

    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        service: str = "upstream",
        status: int | None = None,
        details: str | None = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, details=details, retry_after=retry_after)
        self.service = service
        self.status = status
        if retryable is not None:
            self.retryable = retryable


class UpstreamRateLimited(UpstreamError):
    status_code = 429


class UpstreamTimeout(UpstreamError):
    status_code = 504


class UpstreamUnavailable(UpstreamError):
    status_code = 500


class UpstreamRequestError(UpstreamError):
    """Non-retryable upstream rejection (bad request, auth, missing key)."""

    status_code = 500
    retryable = False


class ModelOutputParseError(ValueError):
    """Raised when a model response holds no usable JSON value."""
