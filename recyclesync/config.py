"""Configuration for the sync client.

Values come from ``RECYCLESYNC_*`` environment variables or a ``.env`` file.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Sync client settings."""

    model_config = SettingsConfigDict(
        env_prefix="RECYCLESYNC_",
        env_file=".env",
        extra="ignore",
    )

    # Local store
    database_url: str = "sqlite:///./recyclesync.db"
    operation_log: Path = Path("./recyclesync-oplog.jsonl")
    eviction_days: int = 30

    # Remote store (records proxy)
    remote_url: str | None = None
    remote_token: str | None = None
    request_timeout: float = 30.0

    # Blob storage
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_endpoint_url: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    upload_folder: str = "waste-items"
    blob_public_url: str | None = None

    # Sync policy
    push_unresolved_attachments: bool = False
    max_merge_attempts: int = Field(default=3, ge=1)

    # Per-record failure lockout
    max_failed_attempts: int = Field(default=5, ge=1)
    lockout_seconds: float = 300.0
    max_lockout_seconds: float = 3600.0

    # Connectivity probe
    probe_host: str | None = None
    probe_port: int = 443
    probe_timeout: float = 3.0

    log_level: str = "INFO"

    @property
    def remote_configured(self) -> bool:
        """Whether a remote store has been configured."""
        return bool(self.remote_url and self.remote_token)

    @property
    def blob_configured(self) -> bool:
        return bool(self.s3_bucket)
