"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class BookingIngestorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="BOOKING_INGEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Mailbox settings
    user_id: str = "me"
    processed_label: str = "PROCESSED"
    recency_window_days: int = 7
    max_candidates_per_cycle: int = 50
    max_results_per_page: int = 50
    default_sender_allowlist: list[str] = ["@world-insight.de"]
    body_table_markers: tuple[str, str] = ("reisename", "pax")

    # Storage
    database_path: Path = Path("data/booking_ingestor.db")
    booking_database_path: Path = Path("data/bookings.db")
    artifact_dir: Path = Path("data/artifacts")

    # Rate limiting & retry (mailbox transport)
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    inter_page_delay_seconds: float = 0.2
    num_retries: int = 3

    # Timeouts for external calls
    mailbox_timeout_seconds: float = 30.0
    extraction_timeout_seconds: float = 120.0
    notify_timeout_seconds: float = 15.0

    # Scheduling
    poll_enabled: bool = True
    poll_interval_minutes: int = 5
    startup_delay_seconds: float = 5.0
    max_overlapping_cycles: int = 2
    worker_count: int = 4

    # Import state machine
    retry_threshold: int = 3
    stale_pending_minutes: int = 30

    # Extraction service
    anthropic_api_key: str | None = None
    extraction_model: str = "claude-3-5-sonnet-20241022"
    extraction_max_tokens: int = 4096

    # Notifications
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    notify_email: str | None = None
    imports_url: str = "http://localhost:3000/email-imports"

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.booking_database_path.parent.mkdir(parents=True, exist_ok=True)
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
