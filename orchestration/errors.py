from __future__ import annotations

from typing import Optional


class TryOnError(Exception):
    """Base class for every failure the orchestration layer knows how to classify."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider

    def to_contract(self) -> dict:
        """Normalized provider error contract shared by every adapter."""
        return {
            "retryable": self.retryable,
            "retry_after_seconds": getattr(self, "retry_after", None),
            "message": self.message,
        }


class AuthError(TryOnError):
    kind = "auth"


class RateLimitError(TryOnError):
    kind = "rate_limit"
    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None, retry_after: Optional[float] = None) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderError(TryOnError):
    kind = "provider"

    def __init__(self, message: str, provider: Optional[str] = None, retryable: bool = False, status_code: Optional[int] = None) -> None:
        super().__init__(message, provider)
        self.retryable = retryable
        self.status_code = status_code


class ProviderTimeoutError(TryOnError):
    kind = "timeout"
    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None, responded: bool = False) -> None:
        super().__init__(message, provider)
        # True when the provider had already answered (e.g. accepted a prediction)
        self.responded = responded


class ProviderNotConfigured(TryOnError):
    kind = "not_configured"


class RequestCancelled(TryOnError):
    kind = "cancelled"


class PreprocessError(TryOnError):
    kind = "preprocess"


class FetchError(TryOnError):
    kind = "fetch"
