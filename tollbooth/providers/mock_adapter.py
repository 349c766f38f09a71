"""Mock chat provider for tests and local runs without network access."""

import math
from typing import Any

from tollbooth.providers.base import ChatProvider, Completion


class MockChatProvider(ChatProvider):
    """Mock provider for testing.

    Returns canned completions and can be told to fail for specific
    models, so routing, retry and fallback paths run deterministically.

    Attributes:
        responses: Pre-configured response text keyed by model.
        failures: Queued exceptions per model, raised in order; a model
            whose queue is empty succeeds.
        calls: Record of all invocations for test assertions.
    """

    @property
    def provider_name(self) -> str:
        """Return 'mock' for testing."""
        return "mock"

    def __init__(
        self,
        responses: dict[str, str] | None = None,
        output_tokens: int = 50,
        input_tokens: int | None = None,
    ) -> None:
        """Initialize mock provider.

        Args:
            responses: Model to response text. Defaults to
                "Mock response from {model}".
            output_tokens: Completion tokens reported for every call.
            input_tokens: Prompt tokens reported for every call; defaults
                to ceil(len(prompt) / 4).
        """
        self.responses: dict[str, str] = dict(responses) if responses else {}
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[dict[str, Any]] = []
        self._output_tokens = output_tokens
        self._input_tokens = input_tokens

    def fail_with(self, model: str, error: Exception, times: int = 1) -> None:
        """Queue ``error`` to be raised on the next ``times`` calls for ``model``."""
        self.failures.setdefault(model, []).extend([error] * times)

    async def chat_completion(
        self,
        prompt: str,
        credential: str,
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        """Record the call, then fail or return a canned completion."""
        self.calls.append(
            {
                "prompt": prompt,
                "credential": credential,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        queued = self.failures.get(model)
        if queued:
            raise queued.pop(0)

        input_tokens = (
            self._input_tokens
            if self._input_tokens is not None
            else math.ceil(len(prompt) / 4)
        )
        return Completion(
            text=self.responses.get(model, f"Mock response from {model}"),
            input_tokens=input_tokens,
            output_tokens=self._output_tokens,
            model_used=model,
            provider=self.provider_name,
            finish_reason="stop",
            latency_ms=1.0,
        )
