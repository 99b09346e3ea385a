"""Configuration settings for promptkit."""

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


class Settings(BaseSettings):
    """Pydantic settings class for promptkit."""

    # Define the settings with default values and types
    # These will be loaded from PROMPTKIT_* environment variables or a .env file if not provided
    model_config = SettingsConfigDict(
        env_prefix="PROMPTKIT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Completion backend
    PROVIDER: str = "openai"  # Options: openai, anthropic, tgi, scripted
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    TGI_ENDPOINT: str = "http://tgi:8080"
    REQUEST_TIMEOUT: float = 30.0
    HTTP_MAX_ATTEMPTS: int = 3

    # Session defaults
    TEMPERATURE: float = 0.7
    TOP_K: int = 3
    CONTEXT_TOKENS: int = 6144

    # Loop defaults
    MAX_ITERATIONS: int = 10
    MAX_RETRIES: int = 3
    MAX_REFLECTIONS: int = 2


settings = Settings()
