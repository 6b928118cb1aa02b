"""Gateway settings loaded from environment variables.

Environment Configuration:
    LLMGATE_ENV: Deployment environment (local | test | staging | prod)
    LLMGATE_TIMEOUT_S: Default per-call timeout in seconds (provider defaults apply if unset)
    LLMGATE_LOG_JSON: Emit JSON logs (true) or console logs (false)
    LLMGATE_ENABLED_PROVIDERS: Comma-separated allow-list of providers (unset = all)

Provider Credentials (all optional):
    OPENAI_API_KEY, ANTHROPIC_API_KEY, GEMINI_API_KEY, GROQ_API_KEY,
    TOGETHER_API_KEY, OPENROUTER_API_KEY, MISTRAL_API_KEY, DEEPSEEK_API_KEY

Base URL Overrides (all optional):
    OPENAI_BASE_URL, ANTHROPIC_BASE_URL, GEMINI_BASE_URL, OLLAMA_BASE_URL,
    LLAMAFILE_BASE_URL, LMSTUDIO_BASE_URL

Note: Only the gateway layer reads settings. Adapters and the registry receive
an explicit ProviderConfig and never consult process state themselves.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from llmgate.adapter import ProviderConfig


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Gateway configuration."""

    llmgate_env: Environment = Field(default=Environment.LOCAL, alias="LLMGATE_ENV")
    timeout_s: float | None = Field(default=None, alias="LLMGATE_TIMEOUT_S")
    log_json: bool = Field(default=True, alias="LLMGATE_LOG_JSON")
    enabled_providers: str | None = Field(default=None, alias="LLMGATE_ENABLED_PROVIDERS")

    # Provider credentials
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    groq_api_key: str | None = Field(default=None, alias="GROQ_API_KEY")
    together_api_key: str | None = Field(default=None, alias="TOGETHER_API_KEY")
    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")
    mistral_api_key: str | None = Field(default=None, alias="MISTRAL_API_KEY")
    deepseek_api_key: str | None = Field(default=None, alias="DEEPSEEK_API_KEY")

    # Base URL overrides
    openai_base_url: str | None = Field(default=None, alias="OPENAI_BASE_URL")
    anthropic_base_url: str | None = Field(default=None, alias="ANTHROPIC_BASE_URL")
    gemini_base_url: str | None = Field(default=None, alias="GEMINI_BASE_URL")
    ollama_base_url: str | None = Field(default=None, alias="OLLAMA_BASE_URL")
    llamafile_base_url: str | None = Field(default=None, alias="LLAMAFILE_BASE_URL")
    lmstudio_base_url: str | None = Field(default=None, alias="LMSTUDIO_BASE_URL")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def validate_timeout(self) -> "Settings":
        """Reject non-positive timeouts."""
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("LLMGATE_TIMEOUT_S must be positive")
        return self

    @property
    def enabled_provider_set(self) -> frozenset[str] | None:
        """Parse the comma-separated allow-list. None means every provider is enabled."""
        if self.enabled_providers is None:
            return None
        return frozenset(
            p.strip().lower() for p in self.enabled_providers.split(",") if p.strip()
        )

    def is_provider_enabled(self, provider: str) -> bool:
        """Check the allow-list for a provider."""
        enabled = self.enabled_provider_set
        return enabled is None or provider.lower() in enabled

    def provider_config(self, provider: str) -> ProviderConfig:
        """Build the ProviderConfig for a provider from these settings."""
        name = provider.lower()
        return ProviderConfig(
            api_key=getattr(self, f"{name}_api_key", None),
            base_url=getattr(self, f"{name}_base_url", None),
            timeout_s=self.timeout_s,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (for testing)."""
    get_settings.cache_clear()
