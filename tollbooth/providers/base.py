"""Abstract chat provider interface.

A provider turns a prompt into a completion using whichever API key it
is handed: the tenant's own key for BYOK requests or the platform key
for managed ones. Token counts come back with the completion and drive
settlement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class Completion:
    """Provider response with usage.

    Attributes:
        text: Generated text.
        input_tokens: Prompt tokens reported by the provider.
        output_tokens: Completion tokens reported by the provider.
        model_used: Model that actually served the request.
        provider: Provider name (e.g. "openrouter").
        finish_reason: Why generation stopped, if reported.
        latency_ms: Request latency in milliseconds.
    """

    text: str
    input_tokens: int
    output_tokens: int
    model_used: str
    provider: str
    finish_reason: str | None = None
    latency_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ChatProvider(ABC):
    """Abstract interface for chat completion providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier used in logs and results."""
        ...

    @abstractmethod
    async def chat_completion(
        self,
        prompt: str,
        credential: str,
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        """Generate a completion for a single user prompt.

        Args:
            prompt: User prompt.
            credential: API key to authenticate with.
            model: Model identifier.
            max_tokens: Override default max tokens.
            temperature: Override default temperature.

        Returns:
            Completion with text and token usage.

        Raises:
            ProviderError: A subclass describing the failure.
        """
        ...
