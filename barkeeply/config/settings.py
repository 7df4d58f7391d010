"""
Service settings.

Every field maps to an environment variable of the same name (case
insensitive), optionally read from .env. Values are type-checked when the
app starts, so a bad value fails fast instead of surfacing halfway through
a flush.

The two mock modes let the service run with no storage or warehouse
credentials at all.
"""

from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings for the media and telemetry service.

    List-valued settings (api_keys, storage_public_buckets, ...) are
    comma-separated strings; use the *_list properties to read them.
    """

    # API Configuration
    api_title: str = "Barkeeply Media & Telemetry API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Multiple keys allow rotation without downtime."
    )

    # Object Storage Configuration
    storage_endpoint_url: str = Field(
        default="",
        description="S3-compatible endpoint for the managed storage service"
    )
    storage_access_key_id: str = Field(
        default="",
        description="Storage access key ID"
    )
    storage_secret_access_key: str = Field(
        default="",
        description="Storage secret access key"
    )
    storage_region: str = Field(
        default="auto",
        description="Storage region. S3-compatible providers often accept 'auto'."
    )
    storage_public_host: Optional[str] = Field(
        default=None,
        description="Host serving stored objects. Derived from the endpoint URL if not provided."
    )
    storage_public_buckets: str = Field(
        default="",
        description="Comma-separated buckets readable without a signature. Resolved without a network call."
    )
    storage_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real object storage."
    )
    storage_upload_buckets: str = Field(
        default="drink-images,avatars",
        description="Comma-separated buckets clients may upload images into."
    )
    max_image_size_mb: int = Field(
        default=10,
        description="Maximum image upload size in MB."
    )

    # Signed URL Cache
    signed_url_ttl_seconds: int = Field(
        default=3600,
        description="Lifetime requested for each signed URL."
    )
    signed_url_safety_margin_seconds: int = Field(
        default=300,
        description="How long before true expiry a cached URL stops being served."
    )

    # Snowflake Configuration (analytics ingestion)
    snowflake_account: str = Field(
        default="",
        description="Account identifier of the telemetry warehouse"
    )
    snowflake_user: str = Field(
        default="",
        description="User the event sink connects as"
    )
    snowflake_password: str = Field(
        default="",
        description="Password for SNOWFLAKE_USER. Ignored when a private key is set."
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="PEM private key file for key-pair auth"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64 of the PEM private key, for hosts that can't mount files"
    )
    snowflake_database: str = Field(
        default="BARKEEPLY",
        description="Database holding the analytics_events table"
    )
    snowflake_schema: str = Field(
        default="TELEMETRY",
        description="Schema holding the analytics_events table"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Warehouse that runs the inserts"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Role to assume; the user's default role when unset"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real Snowflake connection."
    )

    # Analytics Queue
    analytics_batch_size: int = Field(
        default=10,
        description="Queue length that triggers an immediate flush."
    )
    analytics_flush_interval_seconds: float = Field(
        default=30.0,
        description="Delay after the most recent enqueue before a deferred flush."
    )
    analytics_max_retry_delay_seconds: float = Field(
        default=300.0,
        description="Upper bound for the retry timer after repeated send failures."
    )
    analytics_max_queue_size: int = Field(
        default=1000,
        description="Oldest events are dropped beyond this many queued events."
    )
    analytics_queue_path: str = Field(
        default=".barkeeply/analytics_queue.json",
        description="File mirroring the in-memory queue so buffered events survive a crash."
    )
    analytics_max_sessions: int = Field(
        default=1000,
        description="Client sessions tracked at once; the least recently used is ended beyond this."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root log level name, e.g. INFO or DEBUG"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:5173,capacitor://localhost",
        description="Comma-separated origins allowed to call the API (web app and native shell)."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def storage_public_buckets_list(self) -> list[str]:
        """Parse comma-separated public bucket names into a list."""
        return [b.strip() for b in self.storage_public_buckets.split(",") if b.strip()]

    @property
    def storage_upload_buckets_list(self) -> list[str]:
        """Parse comma-separated upload bucket names into a list."""
        return [b.strip() for b in self.storage_upload_buckets.split(",") if b.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def storage_host(self) -> str:
        """
        Host that serves managed storage objects.

        URLs on any other host are treated as external and passed through
        untouched by the resolver.
        """
        if self.storage_public_host:
            return self.storage_public_host
        if self.storage_endpoint_url:
            return urlparse(self.storage_endpoint_url).hostname or ""
        return "storage.mock.local"

    def validate_required_fields(self) -> list[str]:
        """
        List settings that are missing or inconsistent.

        Credentials are only required for backends not in mock mode, which
        is why this isn't expressed as field validation.
        """
        missing = []

        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            has_key = self.snowflake_private_key_path or self.snowflake_private_key_base64
            if not self.snowflake_password and not has_key:
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if not self.storage_mock_mode:
            if not self.storage_endpoint_url:
                missing.append("STORAGE_ENDPOINT_URL")
            if not self.storage_access_key_id:
                missing.append("STORAGE_ACCESS_KEY_ID")
            if not self.storage_secret_access_key:
                missing.append("STORAGE_SECRET_ACCESS_KEY")

        if self.signed_url_safety_margin_seconds >= self.signed_url_ttl_seconds:
            missing.append("SIGNED_URL_SAFETY_MARGIN_SECONDS (must be below SIGNED_URL_TTL_SECONDS)")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Settings from the environment, read once per process.

    Tests build Settings directly and pass them to create_app().
    """
    return Settings()
