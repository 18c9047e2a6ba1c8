"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and application settings.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_debug: bool = Field(default=True, alias="API_DEBUG")

    # ACME/Let's Encrypt Configuration
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_use_staging: bool = Field(
        default=False,
        alias="ACME_USE_STAGING",
        description="Use staging environment to avoid rate limits during testing",
    )
    acme_account_email: str = Field(
        default="", alias="ACME_ACCOUNT_EMAIL", description="Email for Let's Encrypt account registration"
    )
    acme_challenge_dir: str = Field(
        default="/var/www/.well-known/acme-challenge",
        alias="ACME_CHALLENGE_DIR",
        description="Directory for ACME HTTP-01 challenge files",
    )
    acme_poll_interval: float = Field(
        default=2.0, alias="ACME_POLL_INTERVAL", description="Seconds between authorization status polls"
    )
    acme_poll_timeout: int = Field(
        default=90, alias="ACME_POLL_TIMEOUT", description="Seconds to wait for an authorization to become valid"
    )
    acme_finalize_timeout: int = Field(
        default=90, alias="ACME_FINALIZE_TIMEOUT", description="Seconds to wait for order finalization"
    )

    # Domain naming
    certificate_subdomain_prefix: str = Field(
        default="checkout",
        alias="CERTIFICATE_SUBDOMAIN_PREFIX",
        description="Subdomain the certificate covers for each registered domain (empty = apex)",
    )

    # Storage
    database_path: str = Field(
        default="/var/lib/certflow/certflow.db",
        alias="DATABASE_PATH",
        description="Path to SQLite database for certificates, accounts and renewal logs",
    )

    # Batch activation
    batch_chunk_pause_seconds: float = Field(
        default=2.0, alias="BATCH_CHUNK_PAUSE_SECONDS", description="Pause between chunks of a batch"
    )
    batch_job_retention_hours: int = Field(
        default=24, alias="BATCH_JOB_RETENTION_HOURS", description="Hours to keep finished batch jobs in memory"
    )
    idempotence_min_valid_days: int = Field(
        default=7,
        alias="IDEMPOTENCE_MIN_VALID_DAYS",
        description="Active certificates valid longer than this are not re-issued by a batch",
    )

    # Renewal sweep
    renewal_cron: str = Field(
        default="0 2 * * *", alias="RENEWAL_CRON", description="Crontab expression for the daily renewal sweep"
    )
    renewal_timezone: str = Field(
        default="America/Sao_Paulo", alias="RENEWAL_TIMEZONE", description="Timezone for the renewal schedule"
    )
    renewal_days_before_expiry: int = Field(
        default=30, alias="RENEWAL_DAYS_BEFORE_EXPIRY", description="Days before expiry to trigger automatic renewal"
    )
    renewal_max_per_run: int = Field(
        default=10, alias="RENEWAL_MAX_PER_RUN", description="Maximum certificates renewed per sweep"
    )
    renewal_timeout_ms: int = Field(
        default=300000, alias="RENEWAL_TIMEOUT_MS", description="Per-certificate renewal timeout in milliseconds"
    )
    sweep_item_pause_seconds: float = Field(
        default=2.0, alias="SWEEP_ITEM_PAUSE_SECONDS", description="Pause between renewals within a sweep"
    )
    renewal_scheduler_autostart: bool = Field(
        default=True, alias="RENEWAL_SCHEDULER_AUTOSTART", description="Start the renewal scheduler on boot"
    )
    renewal_log_retention_days: int = Field(
        default=90, alias="RENEWAL_LOG_RETENTION_DAYS", description="Days to retain renewal sweep logs"
    )
    cert_expiry_warning_days: int = Field(
        default=30, alias="CERT_EXPIRY_WARNING_DAYS", description="Days before expiry a certificate is expiring_soon"
    )

    # Fallback certificates
    self_signed_validity_days: int = Field(
        default=365, alias="SELF_SIGNED_VALIDITY_DAYS", description="Validity of locally generated certificates"
    )
    self_signed_key_size: int = Field(default=2048, alias="SELF_SIGNED_KEY_SIZE")

    # Private Key Encryption
    encrypt_private_keys: bool = Field(
        default=False, alias="ENCRYPT_PRIVATE_KEYS", description="Encrypt private keys at rest using Fernet"
    )
    private_key_encryption_key: str | None = Field(
        default=None,
        alias="PRIVATE_KEY_ENCRYPTION_KEY",
        description="Passphrase for private key encryption (min 16 chars recommended)",
    )

    # Rate limiting
    rate_limit_mutation: str = Field(
        default="30/minute", alias="RATE_LIMIT_MUTATION", description="Rate limit for batch/renewal requests"
    )

    # CORS
    cors_allowed_origins: str = Field(
        default="",
        alias="CORS_ALLOWED_ORIGINS",
        description="Comma-separated list of allowed CORS origins (empty = wildcard in debug mode only)",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file

    @property
    def active_directory_url(self) -> str:
        """ACME directory in use (staging or production)."""
        if self.acme_use_staging:
            return self.acme_staging_url
        return self.acme_directory_url


# Global settings instance
settings = Settings()


def ensure_directories():
    """Ensure required directories exist (for development/testing)."""
    dirs_to_create = [
        settings.acme_challenge_dir,
        str(Path(settings.database_path).parent),
    ]

    for dir_path in dirs_to_create:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
