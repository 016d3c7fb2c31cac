"""Configuration and environment settings for the Statement Importer."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the Statement Importer."""

    database_url: str = "sqlite:///jobs/imports.db"

    s3_endpoint_url: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket: str = "statement-imports"

    groq_api_key: str = ""
    vision_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    vision_temperature: float = 0.1
    vision_max_completion_tokens: int = 4096
    vision_min_confidence: int = 50

    encryption_key: str = ""

    import_concurrency: int = 5
    categorization_concurrency: int = 2
    import_max_attempts: int = 3
    import_backoff_seconds: float = 2.0
    categorization_max_attempts: int = 2
    categorization_backoff_seconds: float = 1.0
    queue_lease_seconds: float = 300.0
    queue_poll_interval: float = 0.5

    status_transactions_cap: int = 100
    start_workers: bool = False

    server_host: str = "127.0.0.1"
    server_port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()
