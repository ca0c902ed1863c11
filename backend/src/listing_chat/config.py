"""Configuration management."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts, empty host means in-memory
    db_host: str = ""
    db_port: str = "5432"
    db_name: str = "listing_chat"
    db_user: str = "listing_chat"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        if not self.db_host:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Realtime
    notify_channel: str = "listing_chat_changes"
    poll_interval_seconds: float = 3.0  # Degraded-mode polling cadence
    poll_max_backoff_seconds: float = 30.0
    resubscribe_interval_seconds: float = 10.0
    sse_heartbeat_seconds: int = 30
    seen_message_window: int = 1000  # Message ids remembered per session for replay dedup

    # Sessions
    session_idle_seconds: float = 1800.0  # Sessions without a stream expire after this long unused

    # Conversations
    conversation_list_limit: int = 50

    # Auth
    allow_dev_user: bool = False  # Accept requests without X-User-ID as local-dev-user

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
