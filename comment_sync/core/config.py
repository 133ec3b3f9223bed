"""
Comment sync configuration management.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Comment sync settings with environment variable support."""

    # Remote API
    API_BASE_URL: str = "http://localhost:8080/api"
    API_TOKEN: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Reconciliation
    POLL_INTERVAL_SECONDS: float = 5.0
    BACKOFF_FACTOR: float = 2.0
    MAX_BACKOFF_SECONDS: float = 60.0

    # Mutations
    MAX_COMMENT_LENGTH: int = 10000
    ROLLBACK_EDIT_DELETE_ON_FAILURE: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
