"""Configuration management for agentdesk."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AGENTDESK_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Server settings
    host: str = "127.0.0.1"
    port: int = 3000
    debug: bool = False

    # Change-event audit log
    database_url: str = "sqlite+aiosqlite:///./agentdesk.db"

    # Logging
    log_level: str = "INFO"

    # Provider credentials, one key is seeded per catalog model of the provider
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    google_api_key: str | None = None
    amazon_api_key: str | None = None
    meta_api_key: str | None = None
    deepseek_api_key: str | None = None
    xai_api_key: str | None = None
    ninja_api_key: str | None = None

    # Endpoint overrides keyed by provider name, e.g. {"ninja": "https://..."}
    provider_base_urls: dict[str, str] = {}
    provider_timeout_seconds: float = 60.0

    # Key pool rate limiting (sliding window per key)
    key_window_seconds: float = 60.0
    key_requests_per_window: int = 60
    key_tokens_per_window: int = 10000

    # Agents; agent_models rebinds agent types to other catalog models, e.g. {"turbo": "echo-1"}
    agent_failure_threshold: int = 3
    agent_models: dict[str, str] = {}
    latency_smoothing: float = 0.5
    premium_agent_types: list[str] = ["apex"]

    # Task reaping
    stale_task_seconds: float = 3600.0
    reaper_interval_seconds: float = 60.0

    # Virtual sessions
    session_start_delay_seconds: float = 5.0
    session_stop_delay_seconds: float = 3.0
    max_command_length: int = 4096

    # Change events
    event_queue_size: int = 1000

    def provider_credentials(self) -> dict[str, str]:
        """Return configured credentials keyed by provider name."""
        candidates = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
            "amazon": self.amazon_api_key,
            "meta": self.meta_api_key,
            "deepseek": self.deepseek_api_key,
            "xai": self.xai_api_key,
            "ninja": self.ninja_api_key,
        }
        return {name: value for name, value in candidates.items() if value}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
