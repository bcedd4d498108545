"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Job execution service
    service_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0

    # Log retrieval
    log_chunk_size: int = 1024 * 1024  # Max bytes per log fetch (CHUNK)

    # Runs view paging
    runs_page_size: int = 50

    # Running-run poller (0 disables)
    poll_interval_seconds: int = 5

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
