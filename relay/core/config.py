"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase project for users, collected messages and sync logs
- Cursor store is pluggable: JSON side file (default) or Postgres table
- Every tuning constant (page budgets, pauses, fallback windows) is configurable

SECURITY:
- All secrets loaded from environment variables
- No hardcoded credentials
"""
from typing import List, Optional
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Sync engine settings.
    Validates all environment variables at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Root log level")
    enable_scheduler: bool = Field(default=True, description="Run the periodic scheduler inside the API process")

    # ============================================================================
    # STORAGE (Supabase PostgreSQL)
    # ============================================================================

    supabase_url: str = Field(description="Supabase project URL")
    supabase_service_key: str = Field(description="Supabase service key (backend uses this)")
    database_url: Optional[str] = Field(default=None, description="PostgreSQL connection string (psycopg, Postgres cursor backend only)")

    # ============================================================================
    # OAUTH (Google)
    # ============================================================================

    google_client_id: Optional[str] = Field(default=None, description="Google OAuth client ID")
    google_client_secret: Optional[str] = Field(default=None, description="Google OAuth client secret")
    google_token_uri: str = Field(default="https://oauth2.googleapis.com/token", description="Google OAuth token endpoint")
    token_refresh_margin_seconds: int = Field(default=300, description="Refresh access tokens this many seconds before expiry")

    # ============================================================================
    # RETRY
    # ============================================================================

    retry_max_attempts: int = Field(default=3, description="Total attempts per remote call (first call included)")
    retry_base_delay_seconds: float = Field(default=1.0, description="Backoff base; attempt n waits base * 2^(n-1)")
    retry_status_codes: List[int] = Field(default=[429, 503], description="Provider status codes treated as transient")
    retry_max_wait_seconds: float = Field(default=60.0, description="Upper bound on a provider Retry-After hint honoured between attempts")

    # ============================================================================
    # SCHEDULING
    # ============================================================================

    fetch_interval_minutes: int = Field(default=10, description="Collection cycle interval (wall-clock minutes)")
    initial_run_delay_seconds: float = Field(default=30.0, description="Delay before the first cycle after start")

    # ============================================================================
    # GOOGLE CHAT
    # ============================================================================

    chat_api_base_url: str = Field(default="https://chat.googleapis.com/v1", description="Google Chat REST base URL")
    chat_page_size: int = Field(default=100, description="Messages per Chat list page (also the initial-fetch ceiling)")
    chat_page_pause_seconds: float = Field(default=0.2, description="Pause between Chat list pages")
    user_name_mapping_path: Optional[str] = Field(default=None, description="JSON file mapping Chat sender resource names to display names")

    # ============================================================================
    # GMAIL
    # ============================================================================

    gmail_api_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1", description="Gmail REST base URL")
    mail_page_size: int = Field(default=100, description="Message IDs per Gmail list page")
    mail_initial_max_results: int = Field(default=500, description="Listing budget for the initial collection")
    mail_incremental_max_results: int = Field(
        default=100,
        description="Messages stored per incremental run; older backlog is drained on later runs",
    )
    mail_fallback_window_days: int = Field(default=7, description="Recent window used when the incremental watermark is missing")
    mail_fallback_max_results: int = Field(default=100, description="Listing budget for the fallback window")
    mail_detail_pause_seconds: float = Field(default=0.1, description="Pause after each Gmail detail fetch")
    mail_page_pause_seconds: float = Field(default=0.2, description="Pause between Gmail list pages")

    # ============================================================================
    # CURSOR STORE
    # ============================================================================

    cursor_backend: str = Field(default="file", description="Cursor backend: file or postgres")
    cursor_file_path: str = Field(default="spaces_with_latest_messages.json", description="JSON cursor file (file backend)")

    # ============================================================================
    # HTTP / PROCESS BOUNDARY
    # ============================================================================

    http_timeout_seconds: float = Field(default=60.0, description="Timeout for provider HTTP calls")
    trigger_secret: Optional[str] = Field(default=None, description="Bearer secret required by POST /sync/run (optional)")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        CHECKS:
        - Cursor backend is known and has what it needs
        - Warn if running in production without Sentry or trigger secret
        - Warn if OAuth client is missing (token refresh will fail)
        """
        if self.cursor_backend not in ("file", "postgres"):
            raise ValueError(f"Unknown cursor_backend '{self.cursor_backend}' (expected 'file' or 'postgres')")

        if self.cursor_backend == "postgres" and not self.database_url:
            raise ValueError("cursor_backend=postgres requires DATABASE_URL")

        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")

        if not 1 <= self.fetch_interval_minutes <= 60:
            raise ValueError("fetch_interval_minutes must be between 1 and 60")

        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

            if not self.trigger_secret:
                logger.warning("⚠️  TRIGGER_SECRET not set. Manual sync endpoint is unauthenticated.")

        if not self.google_client_id or not self.google_client_secret:
            logger.warning("⚠️  GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set. Token refresh will fail.")

        logger.info("=" * 80)
        logger.info("Relay Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Debug: {self.debug}")
        logger.info(f"Supabase URL: {self.supabase_url}")
        logger.info(f"Cursor backend: {self.cursor_backend}")
        logger.info(f"Fetch interval: {self.fetch_interval_minutes} minutes")
        logger.info(f"Scheduler: {'✅ Enabled' if self.enable_scheduler else '❌ Disabled'}")
        logger.info(f"Sentry: {'✅ Configured' if self.sentry_dsn else '❌ Not configured'}")
        logger.info("=" * 80)

        return self


# Global settings instance
settings = Settings()
