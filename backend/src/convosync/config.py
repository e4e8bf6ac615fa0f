"""Configuration management."""

import logging
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Remote store (Firestore)
    store_backend: Literal["firestore", "memory"] = "firestore"
    google_cloud_project: str = ""
    firestore_database: str = "(default)"
    namespace_collection: str = "agents"
    conversation_subcollection: str = "chats"
    probe_collection: str = "_firestore_probe"

    # Local fallback cache
    local_cache_path: str = ".local_conversations"

    # Retry policy
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    append_conflict_retries: int = 5

    @computed_field
    @property
    def retry_base_delay(self) -> float:
        """Base backoff delay in seconds."""
        return self.retry_base_delay_ms / 1000

    @computed_field
    @property
    def retry_max_delay(self) -> float:
        """Backoff ceiling in seconds."""
        return self.retry_max_delay_ms / 1000

    # Listing
    list_limit: int = 50

    # Sanitizer bounds
    title_max_length: int = 100
    initial_message_max_length: int = 1000
    metadata_list_cap: int = 50

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
