"""Environment-based configuration for the vault AI service."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Vault AI settings, loaded from environment variables."""

    # Server
    PORT: int = 8092
    LOG_LEVEL: str = "INFO"

    # Model provider (empty key = AI features unavailable, local dev default)
    PROVIDER_BASE_URL: str = "https://generativelanguage.googleapis.com"
    PROVIDER_API_KEY: str = ""
    DEFAULT_MODEL: str = "gemini-2.5-flash"

    # Provider timeouts
    PROVIDER_TIMEOUT_SECONDS: int = 120
    PROVIDER_CONNECT_TIMEOUT: int = 10

    # Rate-limit retry (attempts after the first one, delay before the first retry)
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_INITIAL_DELAY_MS: int = 1000

    # Vault chat backend (SSE stream of assistant frames)
    CHAT_API_URL: str = "http://localhost:8000/reggie/api/v1/vault/chat/stream/"
    CHAT_API_TOKEN: str = ""
    CHAT_TIMEOUT_SECONDS: int = 300

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()
