"""Configuration management for Cloak Gateway."""

from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloak_gateway.prompts import SECURITY_SYSTEM_PROMPT

VALID_SENSITIVITIES = ("low", "medium", "high")


class Settings(BaseSettings):
    """Gateway settings loaded from ``CLOAK_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLOAK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_prefix: str = Field(default="cloak_gateway", description="Prefix for log file names")
    log_file_max_bytes: int = Field(
        default=10485760,  # 10MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=5, description="Number of rotated log files to keep"
    )

    # Remote classifier (OpenAI-compatible chat completions endpoint)
    classifier_endpoint: str = Field(
        default="http://localhost:1234/v1",
        description="Base URL of the remote classification service",
    )
    classifier_model: str = Field(
        default="qwen/qwen2.5-coder-14b", description="Model name sent to the classifier"
    )
    classifier_timeout_ms: int = Field(
        default=30000, description="Classifier request timeout in milliseconds"
    )
    system_prompt: str = Field(
        default=SECURITY_SYSTEM_PROMPT,
        description="Classification instruction sent with every prompt",
    )

    # Security policy
    threat_sensitivity: str = Field(
        default="medium", description="Sensitivity level: low, medium, or high"
    )
    enable_audit_log: bool = Field(default=True, description="Record audit events")
    enable_user_override: bool = Field(
        default=True, description="Allow explicitly confirmed overrides of blocked prompts"
    )
    max_prompt_length: int = Field(
        default=10000, description="Maximum prompt length accepted for analysis"
    )

    # Admission queue and resource monitoring
    queue_max_size: int = Field(default=100, description="Maximum pending prompts")
    idle_check_interval_ms: int = Field(
        default=30000, description="Interval of the idle housekeeping check (ms)"
    )
    metrics_retention_count: int = Field(
        default=1000, description="Operation metrics kept in memory"
    )
    health_probe_interval_seconds: int = Field(
        default=60, description="Seconds between classifier health probes"
    )

    # Audit storage
    audit_max_entries: int = Field(default=1000, description="Maximum retained audit events")
    audit_rotation_threshold: float = Field(
        default=0.8, description="Fraction of audit_max_entries that triggers rotation"
    )
    audit_db_path: str | None = Field(
        default=None, description="Optional SQLite file for persisting audit events"
    )

    @field_validator("classifier_endpoint")
    @classmethod
    def validate_classifier_endpoint(cls, v: str) -> str:
        """Validate the endpoint is an http(s) URL with a host."""
        if not v or not v.strip():
            raise ValueError("classifier endpoint URL is required")
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"invalid protocol {parsed.scheme!r}, expected http or https")
        if not parsed.hostname:
            raise ValueError(f"invalid URL format: {v!r}")
        return v.rstrip("/")

    @field_validator("classifier_model", "system_prompt")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Validate text settings are not blank."""
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v

    @field_validator("threat_sensitivity")
    @classmethod
    def validate_threat_sensitivity(cls, v: str) -> str:
        """Validate sensitivity level choice."""
        value = v.lower()
        if value not in VALID_SENSITIVITIES:
            raise ValueError(f"threat_sensitivity must be one of {list(VALID_SENSITIVITIES)}, got: {v}")
        return value

    @field_validator("classifier_timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate the classifier timeout is at least one second."""
        if v < 1000:
            raise ValueError(f"timeout too short: {v}ms")
        return v

    @field_validator("max_prompt_length")
    @classmethod
    def validate_max_prompt_length(cls, v: int) -> int:
        """Validate the prompt length limit."""
        if v < 100:
            raise ValueError(f"max prompt length too short: {v}")
        return v

    @field_validator("queue_max_size", "health_probe_interval_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counters are positive."""
        if v < 1:
            raise ValueError(f"value must be at least 1, got: {v}")
        return v

    @field_validator("idle_check_interval_ms")
    @classmethod
    def validate_idle_interval(cls, v: int) -> int:
        """Validate the idle check interval."""
        if v < 100:
            raise ValueError(f"idle check interval too short: {v}ms")
        return v

    @field_validator("metrics_retention_count", "audit_max_entries")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        """Validate retention sizes."""
        if v < 10:
            raise ValueError(f"retention must be at least 10 entries, got: {v}")
        return v

    @field_validator("audit_rotation_threshold")
    @classmethod
    def validate_rotation_threshold(cls, v: float) -> float:
        """Validate the rotation threshold is in (0, 1]."""
        if not 0 < v <= 1:
            raise ValueError(f"rotation threshold must be in (0, 1], got: {v}")
        return v

    @property
    def classifier_timeout_seconds(self) -> float:
        """Classifier timeout in seconds, as httpx expects it."""
        return self.classifier_timeout_ms / 1000.0

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
