from __future__ import annotations


class StripeApiError(Exception):
    """The platform API answered with an error status."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class StripePermissionError(StripeApiError):
    """The API key is not allowed to read this resource (401/403)."""


class StripeNotFoundError(StripeApiError):
    """The requested object does not exist (404)."""


class StripeRateLimitError(StripeApiError):
    """429; the queue visibility timeout is the retry."""
