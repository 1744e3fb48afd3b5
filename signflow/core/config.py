from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global signflow settings.
    Values are read from the environment and from the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "signflow API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Database
    database_url: str = "sqlite:///./signflow.db"
    sqlite_busy_timeout_seconds: float = 30.0

    # Expiration
    default_expiration_days: int = 30
    min_expiration_days: int = 1
    max_expiration_days: int = 365
    expiration_warning_hours: List[int] = [24]

    # Limits / pagination
    max_signers_per_request: int = 50
    default_page_size: int = 20
    max_page_size: int = 100

    # Concurrency / retries
    counter_max_attempts: int = 25
    store_retry_attempts: int = 5
    store_retry_wait_seconds: float = 0.05
    notification_retry_attempts: int = 3
    notification_retry_wait_seconds: float = 0.5

    # One-time codes
    code_issuer: str = "signflow"
    signing_code_interval_seconds: int = 300
    signing_code_valid_window: int = 1
    verified_session_ttl_minutes: int = 15

    # Reminders
    reminder_min_interval_hours: int = 24
    reminder_max_per_signer: int = 5
    auto_reminders_enabled: bool = True

    # Sweeper
    sweeper_interval_seconds: int = 24 * 60 * 60
    sweeper_batch_size: int = 100

    # E-mail (SMTP)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_starttls: bool = True

    # Twilio (optional, SMS codes)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None

    # Public links sent by e-mail
    public_app_url: str = "http://localhost:5173"

    # Artifact storage
    signflow_storage: str = "_storage"
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_bucket_artifacts: str = "signflow-artifacts"

    def resolved_public_app_url(self) -> str:
        """Base URL used to build the signing links sent to signers."""
        return (self.public_app_url or "").strip().rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


settings = get_settings()
