"""OpenRouter chat adapter.

Talks to any OpenAI-compatible endpoint (OpenRouter by default) through the
OpenAI SDK. The API key is supplied per call, so the same adapter serves
BYOK requests with the tenant's key and managed requests with the platform
key.
"""

import contextlib
import math
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import openai
import structlog
from openai import AsyncOpenAI

from tollbooth.providers.base import ChatProvider, Completion
from tollbooth.providers.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    ModelNotFoundError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitError,
)

if TYPE_CHECKING:
    from tollbooth.providers.config import ProviderConfig

logger = structlog.get_logger()

_CHARS_PER_TOKEN = 4


def _classify_openai_error(error: Exception) -> ProviderError:
    """Map OpenAI SDK exceptions to the provider error taxonomy.

    Returns a ProviderError subclass instance (does not raise).
    The caller is responsible for raising via ``raise _classify_openai_error(e) from e``.
    """
    if isinstance(error, openai.RateLimitError):
        retry_after = None
        if getattr(error, "response", None) is not None:
            retry_header = error.response.headers.get("retry-after")
            if retry_header is not None:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_header)
        return RateLimitError(str(error), retry_after_seconds=retry_after)

    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthenticationError(str(error))

    if isinstance(error, openai.NotFoundError):
        return ModelNotFoundError(str(error))

    if isinstance(error, openai.BadRequestError):
        error_msg = str(error).lower()
        if "context_length" in error_msg or "context length" in error_msg:
            return ContextLengthError(str(error))
        if "content_policy" in error_msg or "moderation" in error_msg:
            return ContentFilterError(str(error))
        return ProviderError(str(error))

    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(error, (openai.APIConnectionError, openai.InternalServerError)):
        return ProviderUnavailableError(str(error))

    return ProviderError(str(error))


class OpenRouterAdapter(ChatProvider):
    """Chat adapter for OpenAI-compatible APIs.

    The platform key gets one long-lived SDK client. Tenant keys get a
    client per call, closed when the call ends.

    Args:
        config: Provider configuration (base URL, timeout, defaults).
    """

    def __init__(self, config: "ProviderConfig") -> None:
        self.config = config
        self._platform_client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openrouter"

    def _new_client(self, credential: str) -> AsyncOpenAI:
        # Retries are driven by with_retries so fallback timing stays bounded
        return AsyncOpenAI(
            api_key=credential,
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            max_retries=0,
        )

    @contextlib.asynccontextmanager
    async def _client_for(self, credential: str) -> AsyncIterator[AsyncOpenAI]:
        if credential == self.config.platform_api_key:
            if self._platform_client is None:
                self._platform_client = self._new_client(credential)
            yield self._platform_client
            return
        client = self._new_client(credential)
        try:
            yield client
        finally:
            await client.close()

    async def chat_completion(
        self,
        prompt: str,
        credential: str,
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        """Generate a completion for a single user prompt.

        Raises:
            AuthenticationError: Missing or rejected API key.
            ProviderError: Any other upstream failure, classified.
        """
        if not credential:
            raise AuthenticationError("No API key supplied for provider call")

        logger.info(
            "llm_request_start",
            provider=self.provider_name,
            model=model,
            prompt_chars=len(prompt),
        )
        start_time = time.monotonic()

        try:
            async with self._client_for(credential) as client:
                response = await client.chat.completions.create(
                    model=model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens
                    if max_tokens is not None
                    else self.config.default_max_tokens,
                    temperature=temperature
                    if temperature is not None
                    else self.config.default_temperature,
                )
        except openai.OpenAIError as e:
            logger.error(
                "llm_request_failed",
                provider=self.provider_name,
                model=model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _classify_openai_error(e) from e

        latency_ms = (time.monotonic() - start_time) * 1000
        if not response.choices:
            raise ProviderError(f"Empty response from {self.provider_name} for {model}")
        choice = response.choices[0]
        text = choice.message.content or ""

        if response.usage is not None:
            input_tokens = response.usage.prompt_tokens
            output_tokens = response.usage.completion_tokens
        else:
            input_tokens = math.ceil(len(prompt) / _CHARS_PER_TOKEN)
            output_tokens = math.ceil(len(text) / _CHARS_PER_TOKEN)
            logger.warning(
                "llm_usage_missing",
                provider=self.provider_name,
                model=model,
                estimated_input_tokens=input_tokens,
                estimated_output_tokens=output_tokens,
            )

        logger.info(
            "llm_request_complete",
            provider=self.provider_name,
            model=response.model or model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )

        return Completion(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model_used=response.model or model,
            provider=self.provider_name,
            finish_reason=choice.finish_reason,
            latency_ms=latency_ms,
        )

    async def aclose(self) -> None:
        """Close the platform client."""
        client, self._platform_client = self._platform_client, None
        if client is not None:
            await client.close()
