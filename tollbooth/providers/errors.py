"""Provider error taxonomy.

Adapters map SDK and HTTP failures onto these classes so the routing
engine can decide between retrying, falling back and giving up without
knowing which upstream produced the error.
"""


__all__ = [
    "ProviderError",
    "ProviderUnavailableError",
    "RateLimitError",
    "AuthenticationError",
    "ModelNotFoundError",
    "ContentFilterError",
    "ContextLengthError",
]


class ProviderError(Exception):
    """Base class for all provider errors.

    Every adapter exception inherits from this class, so one handler can
    catch any upstream failure.
    """

    pass


class ProviderUnavailableError(ProviderError):
    """Temporary failure: network error, timeout or 5xx response.

    Retried with exponential backoff before falling back.
    """

    pass


class RateLimitError(ProviderError):
    """Rate limit exceeded.

    May carry a retry_after_seconds hint from the provider, which the
    retry loop uses instead of its own backoff.
    """

    def __init__(self, message: str, retry_after_seconds: float | None = None):
        """Initialize RateLimitError.

        Args:
            message: Error description from the provider.
            retry_after_seconds: Optional hint from provider on when to retry.
        """
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class AuthenticationError(ProviderError):
    """Invalid, expired or revoked API key. Not retried."""

    pass


class ModelNotFoundError(ProviderError):
    """Requested model doesn't exist or isn't accessible with this key."""

    pass


class ContentFilterError(ProviderError):
    """Content blocked by the provider's safety filter."""

    pass


class ContextLengthError(ProviderError):
    """Input exceeded the model's context window."""

    pass
