"""Shared configuration management for the invoice workflow.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_TWO_LEVEL_APPROVAL_THRESHOLD=50000
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-approval-workflow",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./invoices.db",
        description="SQLAlchemy database URL",
    )
    database_echo: bool = Field(
        default=False,
        description="Log every SQL statement",
    )

    # Approval policy
    two_level_approval_threshold: Decimal = Field(
        default=Decimal("100000"),
        gt=0,
        description="Grand total at or above which senior + final approval is required",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai"] = Field(
        default="openai",
        description="Extraction provider used to parse submitted PDFs",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for invoice extraction",
    )
    extraction_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per extraction call before giving up",
    )
    extraction_workers: int = Field(
        default=2,
        ge=1,
        description="Threads in the in-process extraction queue",
    )
    extraction_stale_after_seconds: int = Field(
        default=900,
        ge=1,
        description="Age after which a PROCESSING extraction is retried by the failed sweep",
    )

    # Document storage
    storage_backend: Literal["local", "minio"] = Field(
        default="local",
        description="Where submitted PDFs live: local directory or S3-compatible storage",
    )
    upload_dir: str = Field(
        default="./uploads",
        description="Directory for the local storage backend",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket holding submitted invoice PDFs",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )

    # Operator queue (arq)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the arq worker",
    )
    queue_max_jobs: int = Field(
        default=10,
        ge=1,
        description="Maximum concurrent jobs per arq worker",
    )
    queue_job_timeout: int = Field(
        default=300,
        ge=1,
        description="Seconds before an arq job is cancelled",
    )

    # Pagination
    notifications_default_limit: int = Field(
        default=20,
        ge=1,
        description="Page size used when a caller does not pass one",
    )
    pagination_max_limit: int = Field(
        default=100,
        ge=1,
        description="Upper bound on any page size",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
