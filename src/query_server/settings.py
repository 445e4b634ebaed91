"""Service settings loaded from the environment.

All variables use the ``INFLUX_`` prefix, e.g. ``INFLUX_URL`` or
``INFLUX_BUCKET``, and may also come from a ``.env`` file.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.config import (
    DEFAULT_LOG_MEASUREMENT,
    DEFAULT_LOOKBACK_HOURS,
    DEFAULT_SPAN_MEASUREMENT,
    REQUEST_TIMEOUT_SECONDS,
)


class Settings(BaseSettings):
    """Configuration for the trace reader service."""

    model_config = SettingsConfigDict(
        env_prefix="INFLUX_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Query service
    url: str = Field(default="http://localhost:8086", description="Query service base URL")
    token: str = Field(default="", description="API token sent as 'Authorization: Token ...'")
    org_id: str = Field(default="", description="Organization ID the bucket belongs to")
    bucket: str = Field(default="tracing", description="Bucket holding span and log points")
    request_timeout_seconds: float = Field(default=REQUEST_TIMEOUT_SECONDS, gt=0)
    verify_ssl: bool = True

    # Schema
    span_measurement: str = DEFAULT_SPAN_MEASUREMENT
    log_measurement: str = DEFAULT_LOG_MEASUREMENT
    default_lookback_hours: float = Field(
        default=DEFAULT_LOOKBACK_HOURS,
        gt=0,
        description="How far back single-trace lookups search",
    )

    # Logging
    log_level: str = "INFO"
    log_format: str = Field(default="json", description="json or console")

    # HTTP API
    host: str = "0.0.0.0"
    port: int = 16686


settings = Settings()
