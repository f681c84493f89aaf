"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Conversation store; empty means no store is configured
    REDIS_URL: str = ""
    CONVERSATION_TTL_SECONDS: int = 30 * 24 * 60 * 60
    STORE_WRITE_RETRIES: int = 5

    # Generation
    GENERATION_TIMEOUT_SECONDS: float = 60.0
    DEFAULT_TEMPERATURE: float = 0.7
    DEFAULT_MAX_TOKENS: int = 2000

    # Provider credentials
    OPENAI_API_KEY: str = ""
    ANTHROPIC_API_KEY: str = ""
    GEMINI_API_KEY: str = ""
    GROQ_API_KEY: str = ""
    XAI_API_KEY: str = ""
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    XAI_BASE_URL: str = "https://api.x.ai/v1"

    # HTTP
    CORS_ALLOW_ORIGINS: str = "*"
    USER_ID_HEADER: str = "X-User-Id"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse allowed CORS origins into a list."""
        return [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
