"""Provider configuration for managed and BYOK routing."""

from dataclasses import dataclass

from tollbooth.core.config import Settings


@dataclass
class ProviderConfig:
    """Centralized provider configuration.

    Attributes:
        base_url: OpenAI-compatible API endpoint (OpenRouter by default).
        platform_api_key: Platform-held key used for managed requests.
        primary_model: Model used for managed requests.
        fallback_model: Model tried once after the primary fails.
        fallback_enabled: Whether fallback is allowed at all.
        timeout_seconds: Per-request timeout.
        default_max_tokens: Default max output tokens.
        default_temperature: Default sampling temperature.
        max_retries: Max retry attempts for transient errors.
        retry_base_delay_ms: Base delay for exponential backoff.
        retry_max_delay_ms: Max delay cap for exponential backoff.
    """

    base_url: str = "https://openrouter.ai/api/v1"
    platform_api_key: str | None = None

    primary_model: str = "deepseek/kimi-k2-thinking"
    fallback_model: str = "qwen/qwen-max-3"
    fallback_enabled: bool = True

    timeout_seconds: float = 60.0
    default_max_tokens: int = 4096
    default_temperature: float = 0.7

    # Retry policy
    max_retries: int = 2
    retry_base_delay_ms: int = 500
    retry_max_delay_ms: int = 8000

    @classmethod
    def from_settings(cls, s: Settings) -> "ProviderConfig":
        """Build the configuration from application settings."""
        return cls(
            base_url=s.provider_base_url,
            platform_api_key=s.platform_api_key.get_secret_value() or None,
            primary_model=s.primary_model,
            fallback_model=s.fallback_model,
            fallback_enabled=s.fallback_enabled,
            timeout_seconds=s.provider_timeout_seconds,
            max_retries=s.provider_max_retries,
            retry_base_delay_ms=s.provider_retry_base_delay_ms,
            retry_max_delay_ms=s.provider_retry_max_delay_ms,
        )
