"""Provider abstraction layer.

Exports:
    Error classes for provider error handling
    ProviderConfig for configuration
    ChatProvider interface and Completion result
"""

from tollbooth.providers.base import ChatProvider, Completion
from tollbooth.providers.config import ProviderConfig
from tollbooth.providers.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    ModelNotFoundError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitError,
)

__all__ = [
    # Config
    "ProviderConfig",
    # Interface
    "ChatProvider",
    "Completion",
    # Errors
    "ProviderError",
    "ProviderUnavailableError",
    "RateLimitError",
    "AuthenticationError",
    "ModelNotFoundError",
    "ContentFilterError",
    "ContextLengthError",
]
