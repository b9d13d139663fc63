"""Configuration management."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings, read from ``CHAT_SYNC_*`` environment variables."""

    # Gemini
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    max_output_tokens: int = Field(default=2000, gt=0)
    enable_search: bool = True

    # Initial load
    conversation_page_size: int = Field(default=20, gt=0)
    message_page_size: int = Field(default=100, gt=0)

    default_title: str = "New Chat"

    # Identity the local API presents; unset means local-only mode
    local_user_id: Optional[str] = None
    local_user_email: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="CHAT_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
