"""Application configuration loaded from environment variables.

Settings for the database, metering (top-up limits, signup bonus,
auto top-up defaults, pre-flight safety margin), provider routing and
credential encryption. Uses pydantic-settings for validation and .env
file support.
"""

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_invariants() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "tollbooth_dev_password"  # nosec B105


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "tollbooth"
    database_user: str = "tollbooth_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Application
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # Metering (all amounts in minor currency units)
    minimum_top_up_cents: int = 1000
    signup_bonus_cents: int = 1000
    default_auto_top_up_threshold_cents: int = 500
    default_auto_top_up_amount_cents: int = 2500
    safety_margin_percent: int = 20
    default_expected_output_tokens: int = 500
    currency_symbol: str = "€"

    # Provider routing
    provider_base_url: str = "https://openrouter.ai/api/v1"
    platform_api_key: SecretStr = SecretStr("")
    primary_model: str = "deepseek/kimi-k2-thinking"
    fallback_model: str = "qwen/qwen-max-3"
    fallback_enabled: bool = True
    provider_timeout_seconds: float = 60.0
    provider_max_retries: int = 2
    provider_retry_base_delay_ms: int = 500
    provider_retry_max_delay_ms: int = 8000

    # Tenant credential encryption (Fernet key, urlsafe base64)
    credential_encryption_key: SecretStr = SecretStr("")

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_invariants(self) -> "Settings":
        """Validate metering invariants and production security requirements.

        Checks:
        - Metering amounts must be non-negative (all environments)
        - Auto top-up refill must meet the minimum top-up (all environments)
        - Safety margin must be a percentage in [0, 100] (all environments)
        - Database password must not be the default in production
        - Credential encryption key must be set in production
        """
        for name in (
            "minimum_top_up_cents",
            "signup_bonus_cents",
            "default_auto_top_up_threshold_cents",
            "default_expected_output_tokens",
        ):
            value = getattr(self, name)
            if value < 0:
                msg = f"{name.upper()} cannot be negative. Got: {value}"
                raise ValueError(msg)

        if self.default_auto_top_up_amount_cents < self.minimum_top_up_cents:
            msg = (
                "DEFAULT_AUTO_TOP_UP_AMOUNT_CENTS must be at least "
                f"MINIMUM_TOP_UP_CENTS ({self.minimum_top_up_cents}). "
                f"Got: {self.default_auto_top_up_amount_cents}"
            )
            raise ValueError(msg)

        if not 0 <= self.safety_margin_percent <= 100:
            msg = (
                "SAFETY_MARGIN_PERCENT must be between 0 and 100. "
                f"Got: {self.safety_margin_percent}"
            )
            raise ValueError(msg)

        if self.provider_max_retries < 0:
            msg = (
                "PROVIDER_MAX_RETRIES cannot be negative. "
                f"Got: {self.provider_max_retries}"
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            if not self.credential_encryption_key.get_secret_value():
                msg = (
                    "CREDENTIAL_ENCRYPTION_KEY must be set in production. "
                    'Generate with: python -c "from cryptography.fernet import '
                    'Fernet; print(Fernet.generate_key().decode())"'
                )
                raise ValueError(msg)

        return self


settings = Settings()
