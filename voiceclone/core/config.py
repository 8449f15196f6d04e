"""
Application configuration with Pydantic settings.

Supports:
- Environment variables
- .env files
- Validation
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    environment: str = Field(default="development", description="Deployment environment")
    service_name: str = Field(default="voiceclone", description="Service name for logs and traces")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # CORS
    cors_origins: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )

    # Redis
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for job persistence (in-memory store if unset)",
    )

    # Storage
    storage_dir: str = Field(
        default="./voice_jobs",
        description="Directory for uploaded recordings and combined assets",
    )

    # Audio processing
    target_sample_rate: int = Field(
        default=44100,
        description="Sample rate of the combined training asset",
    )
    high_pass_cutoff_hz: float = Field(
        default=80.0,
        description="High-pass filter cutoff applied to the combined asset",
    )
    target_peak: float = Field(
        default=0.707,
        description="Peak amplitude after normalization (about -3dB)",
    )
    worker_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single audio worker request",
    )

    # Polling
    poll_interval_seconds: float = Field(
        default=3.0,
        description="Job poller refresh interval",
    )

    # Remote training
    training_api_url: Optional[str] = Field(
        default=None,
        description="Remote training service base URL (local simulation if unset)",
    )
    training_api_key: Optional[str] = Field(
        default=None,
        description="Remote training service API key",
    )
    training_timeout_seconds: float = Field(
        default=600.0,
        description="Timeout for the remote training call",
    )

    # Retry policy
    retry_max_attempts: int = Field(
        default=5,
        description="Maximum attempts for retried transport calls",
    )
    retry_base_delay: float = Field(
        default=1.0,
        description="Base delay in seconds for exponential backoff",
    )

    # Observability
    otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
