"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/helpdesk",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Policy ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to the escalation level policy YAML file"
    )

    # ========== Sweep ==========
    sla_scheduler_enabled: bool = Field(
        default=True,
        description="Run the background escalation sweep"
    )
    sla_sweep_interval_seconds: int = Field(
        default=60,
        description="Seconds between escalation sweeps",
        ge=5
    )
    sla_sweep_budget_seconds: float = Field(
        default=45.0,
        description="Wall-clock budget for one tenant's sweep",
        gt=0
    )
    sla_sweep_concurrency: int = Field(
        default=8,
        description="Concurrent ticket evaluations within one tenant sweep",
        ge=1,
        le=128
    )
    sla_refresh_metrics_on_sweep: bool = Field(
        default=True,
        description="Refresh open-ticket metrics after each tenant sweep"
    )
    terminal_statuses: List[str] = Field(
        default=["resolved", "closed"],
        description="Ticket statuses that end the resolution clock"
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving escalation alerts"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for one escalation alert dispatch",
        ge=0.1,
        le=30
    )
    notification_max_retries: int = Field(
        default=3,
        description="Attempts per escalation alert",
        ge=1,
        le=10
    )
    notification_dispatch_timeout_seconds: float = Field(
        default=15.0,
        description="Upper bound on one alert dispatch including retries",
        gt=0
    )

    # ========== Tenancy ==========
    tenant_header: str = Field(
        default="X-Tenant-ID",
        description="Header carrying the tenant resolved by the session layer"
    )
    user_header: str = Field(
        default="X-User-ID",
        description="Header carrying the acting user id"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("terminal_statuses")
    @classmethod
    def validate_terminal_statuses(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one terminal status is required")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class ClockType(str):
    """Independent SLA clocks tracked per ticket."""
    RESPONSE = "response"
    RESOLUTION = "resolution"
    STATUS_TIMEOUT = "status_timeout"


class EscalationStatus(str):
    """Escalation lifecycle states."""
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"


class NotificationStatus(str):
    """Outcome of the alert dispatch for an escalation."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EscalationSeverity(str):
    """Severity derived from how far past target a clock is."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Fields whose change always triggers SLA re-resolution
DEFAULT_TRACKED_FIELDS = ("priority", "category")
