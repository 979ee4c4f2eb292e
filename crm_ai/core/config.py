from pydantic_settings import BaseSettings, SettingsConfigDict

from crm_ai.gateway.errors import ConfigurationError
from crm_ai.gateway.types import DEFAULT_PROVIDER_CONFIGS, Provider, ProviderConfig


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Provider routing
    ai_primary_provider: str = "gemini"
    ai_fallback_providers: str = "openai"  # comma-separated, tried in order

    # Credentials: comma-separated pools, single-key variables are merged in
    gemini_api_keys: str = ""
    google_api_key: str = ""
    gemini_api_key: str = ""
    openai_api_keys: str = ""
    openai_api_key: str = ""
    ai_shuffle_credentials: bool = True

    # Models
    gemini_model: str = "gemini-2.5-flash"
    gemini_embedding_model: str = "text-embedding-004"
    gemini_audio_model: str = "gemini-2.5-flash"
    openai_model: str = "gpt-4-turbo-preview"

    # Generation defaults (None → provider default)
    ai_default_temperature: float | None = None
    ai_default_max_tokens: int | None = None
    ai_request_timeout: float = 60.0  # seconds, per provider call

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    @property
    def fallback_provider_list(self) -> list[str]:
        return _split(self.ai_fallback_providers)

    def credentials_for(self, provider: Provider | str) -> list[str]:
        """All configured keys for a provider, pool list first."""
        provider = Provider(provider)
        if provider == Provider.GEMINI:
            return _split(self.gemini_api_keys) + _split(self.google_api_key) + _split(self.gemini_api_key)
        if provider == Provider.OPENAI:
            return _split(self.openai_api_keys) + _split(self.openai_api_key)
        return []

    def provider_configs(self) -> dict[Provider, ProviderConfig]:
        gemini = DEFAULT_PROVIDER_CONFIGS[Provider.GEMINI]
        openai = DEFAULT_PROVIDER_CONFIGS[Provider.OPENAI]
        return {
            Provider.GEMINI: ProviderConfig(
                provider=Provider.GEMINI,
                default_model=self.gemini_model,
                default_temperature=gemini.default_temperature,
                default_max_tokens=gemini.default_max_tokens,
                timeout_seconds=self.ai_request_timeout,
                embedding_model=self.gemini_embedding_model,
                audio_model=self.gemini_audio_model,
                base_url=gemini.base_url,
            ),
            Provider.OPENAI: ProviderConfig(
                provider=Provider.OPENAI,
                default_model=self.openai_model,
                default_temperature=openai.default_temperature,
                default_max_tokens=openai.default_max_tokens,
                timeout_seconds=self.ai_request_timeout,
                base_url=openai.base_url,
            ),
        }


settings = Settings()


def validate_ai_settings(config: Settings | None = None) -> None:
    """Validate gateway settings. Raises ConfigurationError listing every problem."""
    config = config or settings
    errors: list[str] = []
    known = {p.value for p in Provider}

    if config.ai_primary_provider not in known:
        errors.append(f"AI_PRIMARY_PROVIDER must be one of {sorted(known)}, got {config.ai_primary_provider!r}")
    elif not config.credentials_for(config.ai_primary_provider):
        errors.append(f"No API keys configured for primary provider {config.ai_primary_provider!r}")

    for name in config.fallback_provider_list:
        if name not in known:
            errors.append(f"Unknown fallback provider {name!r}")

    if config.ai_request_timeout <= 0:
        errors.append("AI_REQUEST_TIMEOUT must be positive")

    if errors:
        raise ConfigurationError("Configuration errors:\n  - " + "\n  - ".join(errors))
