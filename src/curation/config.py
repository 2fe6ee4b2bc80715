"""Curation pipeline configuration using pydantic-settings.

This module defines the CurationSettings class that reads configuration
from environment variables with the CURATION_ prefix. Every field has a
default so the pipeline can start against in-memory storage for local
development; production deployments set CURATION_DATABASE_URL.
"""

from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CurationSettings(BaseSettings):
    """Curation pipeline configuration from environment variables.

    All environment variables are prefixed with CURATION_
    (e.g., CURATION_DATABASE_URL, CURATION_MAX_RETRIES).
    """

    model_config = SettingsConfigDict(
        env_prefix="CURATION_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; in-memory repositories are used when unset
    database_url: Optional[str] = None

    db_min_pool_size: int = 2
    db_max_pool_size: int = 10

    # -------------------------------------------------------------------------
    # Work Lease Configuration
    # -------------------------------------------------------------------------
    # Leases older than this are reclaimable by any worker
    lease_stale_seconds: int = 3600

    # -------------------------------------------------------------------------
    # Quality Gate Configuration
    # -------------------------------------------------------------------------
    # Trigram similarity at or above which a candidate is a duplicate
    similarity_threshold: float = 0.85

    # Hard ceiling on attempt_number per (entity, gate)
    max_gate_attempts: int = 10

    gate_timeout_seconds: float = 30.0

    # -------------------------------------------------------------------------
    # Retry & Feedback Configuration
    # -------------------------------------------------------------------------
    max_retries: int = 3

    # Base delay for exponential backoff between regeneration attempts
    retry_backoff_seconds: float = 60.0

    retry_backoff_max_seconds: float = 3600.0

    # -------------------------------------------------------------------------
    # Mapping & Transformation Configuration
    # -------------------------------------------------------------------------
    # Mappings at or above this confidence are marked auto_mapped
    mapping_auto_threshold: float = 0.3

    # Mappings below this confidence are discarded
    mapping_min_confidence: float = 0.3

    # URL of the external LLM transformation service
    transformation_url: Optional[str] = None

    transformation_timeout_seconds: float = 120.0

    transformation_max_retries: int = 3

    # -------------------------------------------------------------------------
    # Runner Configuration
    # -------------------------------------------------------------------------
    poll_interval_seconds: float = 5.0

    batch_size: int = 50

    # Approve validated items without an operator
    auto_approve: bool = False

    # Event sinks to enable: logging, metrics
    event_sinks: List[str] = ["logging", "metrics"]

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that database URL has a PostgreSQL scheme when set."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("transformation_url")
    @classmethod
    def validate_transformation_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that transformation URL is a valid URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("transformation_url must start with http:// or https://")
        return v

    @field_validator("similarity_threshold", "mapping_auto_threshold", "mapping_min_confidence")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        """Validate that thresholds lie in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        return v

    @field_validator("max_gate_attempts")
    @classmethod
    def validate_max_gate_attempts(cls, v: int) -> int:
        """Validate that the gate attempt ceiling is within 1..10."""
        if not 1 <= v <= 10:
            raise ValueError("max_gate_attempts must be between 1 and 10")
        return v

    @field_validator("max_retries", "transformation_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        """Validate that retry limits are non-negative."""
        if v < 0:
            raise ValueError("retry limits cannot be negative")
        return v

    @field_validator(
        "lease_stale_seconds",
        "gate_timeout_seconds",
        "poll_interval_seconds",
        "transformation_timeout_seconds",
        "batch_size",
    )
    @classmethod
    def validate_positive(cls, v):
        """Validate that durations and sizes are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("event_sinks")
    @classmethod
    def validate_event_sinks(cls, v: List[str]) -> List[str]:
        """Validate that only known event sinks are requested."""
        known = {"logging", "metrics"}
        unknown = [s for s in v if s not in known]
        if unknown:
            raise ValueError(f"unknown event sinks: {', '.join(unknown)}")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_pool_sizes(self) -> "CurationSettings":
        """Validate that the pool bounds are consistent."""
        if self.db_min_pool_size < 1:
            raise ValueError("db_min_pool_size must be at least 1")
        if self.db_max_pool_size < self.db_min_pool_size:
            raise ValueError("db_max_pool_size must be >= db_min_pool_size")
        return self


def get_settings() -> CurationSettings:
    """Create and return CurationSettings instance.

    Returns:
        CurationSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If a field is invalid.
    """
    return CurationSettings()
