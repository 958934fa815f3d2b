"""Configuration for the records proxy service."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Records proxy settings, read from ``RECORDS_PROXY_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="RECORDS_PROXY_",
        env_file=".env",
        extra="ignore",
    )

    s3_bucket: str = "recyclesync-records"
    s3_prefix: str = "collections"
    s3_endpoint_url: str | None = None
    aws_region: str = "us-east-1"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None

    # Bearer token clients must present; when unset every request is rejected
    auth_token: str | None = None

    log_level: str = "INFO"
