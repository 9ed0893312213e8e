"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/revertible.db"

    # Undo log append retries
    undo_log_retry_attempts: int = 3
    undo_log_retry_wait_seconds: float = 0.1
    undo_log_retry_max_wait_seconds: float = 2.0

    # Restore / scope locking
    restore_timeout_seconds: int = 30
    scope_lock_timeout_seconds: float = 30.0

    # History
    history_limit: int = 50

    # Application
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
