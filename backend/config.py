from pydantic_settings import BaseSettings
from functools import lru_cache

from schemas.api import ProviderConfig, ProviderKind


class Settings(BaseSettings):
    log_level: str = "INFO"

    # CORS — comma-separated origins allowed to access the API
    cors_origins: str = "http://localhost:1420,tauri://localhost"

    # Provider used when a request carries no config: "local" or "cloud"
    default_provider: ProviderKind = ProviderKind.LOCAL

    # Local (Ollama-compatible)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    # Cloud (OpenAI-compatible)
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Generation defaults
    max_tokens: int = 2048
    temperature: float = 0.7

    # HTTP timeouts (seconds)
    http_timeout: float = 120.0
    health_timeout: float = 5.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def provider_config(
        self,
        kind: ProviderKind | None = None,
        base_url: str | None = None,
    ) -> ProviderConfig:
        """Build the ProviderConfig used when the caller supplies none."""
        kind = kind or self.default_provider
        if kind is ProviderKind.CLOUD:
            return ProviderConfig(
                provider=kind,
                base_url=base_url or self.openai_base_url,
                model=self.openai_model,
                api_key=self.openai_api_key or None,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        return ProviderConfig(
            provider=kind,
            base_url=base_url or self.ollama_base_url,
            model=self.ollama_model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
