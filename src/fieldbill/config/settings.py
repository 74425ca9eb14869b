"""Configuration settings for fieldbill."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Flat settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ledger database
    database_url: str = Field(
        default="sqlite:///fieldbill.db", validation_alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, validation_alias="DATABASE_ECHO")

    # External accounting system
    accounting_api_url: str = Field(
        default="http://localhost:8000", validation_alias="ACCOUNTING_API_URL"
    )
    accounting_provider: str = Field(
        default="quickbooks", validation_alias="ACCOUNTING_PROVIDER"
    )
    accounting_client_id: str = Field(..., validation_alias="ACCOUNTING_CLIENT_ID")
    accounting_client_secret: SecretStr = Field(
        ..., validation_alias="ACCOUNTING_CLIENT_SECRET"
    )
    accounting_timeout: float = Field(default=30.0, validation_alias="ACCOUNTING_TIMEOUT")
    accounting_max_retries: int = Field(
        default=3, validation_alias="ACCOUNTING_MAX_RETRIES"
    )
    # Refresh the access token when it expires within this window
    token_refresh_window_seconds: int = Field(
        default=300, validation_alias="TOKEN_REFRESH_WINDOW_SECONDS"
    )

    # Content suggestion (LLM) providers
    anthropic_api_key: SecretStr = Field(..., validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: SecretStr = Field(..., validation_alias="OPENAI_API_KEY")
    claude_model: str = Field(default="claude-haiku-4-5", validation_alias="CLAUDE_MODEL")
    gpt_model: str = Field(default="gpt-5-nano", validation_alias="GPT_MODEL")
    llm_max_tokens: int = Field(default=1024, validation_alias="LLM_MAX_TOKENS")
    llm_temperature: float = Field(default=0.3, validation_alias="LLM_TEMPERATURE")
    suggestion_provider: Literal["claude", "openai"] = Field(
        default="claude", validation_alias="SUGGESTION_PROVIDER"
    )

    # Billing policy defaults (per-account overrides live in the policy file)
    approval_confidence_threshold: float = Field(
        default=0.8, validation_alias="APPROVAL_CONFIDENCE_THRESHOLD"
    )
    high_value_threshold: int = Field(
        default=50000, validation_alias="HIGH_VALUE_THRESHOLD"
    )
    fallback_confidence: float = Field(
        default=0.7, validation_alias="FALLBACK_CONFIDENCE"
    )
    overdue_high_days: int = Field(default=30, validation_alias="OVERDUE_HIGH_DAYS")
    overdue_med_days: int = Field(default=14, validation_alias="OVERDUE_MED_DAYS")
    default_payment_terms_days: int = Field(
        default=30, validation_alias="DEFAULT_PAYMENT_TERMS_DAYS"
    )
    billing_policy_path: Path | None = Field(
        default=None, validation_alias="BILLING_POLICY_PATH"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
