"""
Configuration Module
====================

Application settings and configuration management using Pydantic.

Also holds the closed enumerations shared by every layer of the
incident service (status, priority, category, lifecycle events, SLA states).
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="incident-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/incidents",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA configuration YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=60,
        description="Seconds between SLA monitor runs (0 disables the monitor)",
        ge=0
    )

    # ========== Incident Queries ==========
    incident_default_limit: int = Field(
        default=10,
        description="Page size used when a query does not specify one",
        ge=1
    )
    incident_max_limit: int = Field(
        default=100,
        description="Upper bound for the page size of incident queries",
        ge=1
    )

    # ========== Notifications ==========
    notification_queue_size: int = Field(
        default=100,
        description="Per-subscription buffer of the notification dispatcher",
        ge=1
    )
    ws_max_connections: int = Field(
        default=100,
        description="Maximum concurrent WebSocket subscribers",
        ge=1
    )
    ws_queue_size: int = Field(
        default=50,
        description="Outgoing message buffer per WebSocket connection",
        ge=1
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation and SLA notifications"
    )
    slack_channel: str = Field(
        default="#it-helpdesk",
        description="Slack channel for incident notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
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
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize log level names."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class IncidentStatus(str, Enum):
    """Incident lifecycle statuses."""
    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class IncidentPriority(str, Enum):
    """Incident priority levels."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IncidentCategory(str, Enum):
    """Incident categories."""
    HARDWARE = "hardware"
    SOFTWARE = "software"
    NETWORK = "network"
    SECURITY = "security"
    ACCESS = "access"
    SERVICE_REQUEST = "service_request"
    OTHER = "other"


class EventType(str, Enum):
    """Lifecycle events fanned out to subscribers."""
    CREATED = "Created"
    UPDATED = "Updated"
    ASSIGNED = "Assigned"
    STATUS_CHANGED = "StatusChanged"
    COMMENT_ADDED = "CommentAdded"
    REOPENED = "Reopened"
    DELETED = "Deleted"
    ESCALATED = "Escalated"


class SLAState(str, Enum):
    """SLA status states."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"
    MET = "met"


class SortField(str, Enum):
    """Fields an incident query may be sorted by."""
    CREATED_AT = "createdAt"
    UPDATED_AT = "updatedAt"
    PRIORITY = "priority"
    STATUS = "status"


# ========== Field limits ==========

TITLE_MIN_LENGTH = 5
TITLE_MAX_LENGTH = 100
DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 2000
COMMENT_MAX_LENGTH = 1000
REASON_MAX_LENGTH = 500
SATISFACTION_COMMENT_MAX_LENGTH = 500
RESOLUTION_SUMMARY_MAX_LENGTH = 2000
MIN_SATISFACTION_RATING = 1
MAX_SATISFACTION_RATING = 5


# ========== Lists for validation ==========

VALID_STATUSES = list(IncidentStatus)
VALID_PRIORITIES = list(IncidentPriority)
VALID_CATEGORIES = list(IncidentCategory)

OPEN_STATUSES = [
    IncidentStatus.NEW, IncidentStatus.ASSIGNED,
    IncidentStatus.IN_PROGRESS, IncidentStatus.ON_HOLD
]
TERMINAL_STATUSES = [IncidentStatus.CLOSED, IncidentStatus.CANCELLED]
RESOLVED_STATUSES = [IncidentStatus.RESOLVED, IncidentStatus.CLOSED]

# Severity rank used when sorting by priority
PRIORITY_RANK: Dict[IncidentPriority, int] = {
    IncidentPriority.LOW: 0,
    IncidentPriority.MEDIUM: 1,
    IncidentPriority.HIGH: 2,
    IncidentPriority.CRITICAL: 3,
}

# Lifecycle order used when sorting by status
STATUS_RANK: Dict[IncidentStatus, int] = {
    status: index for index, status in enumerate(IncidentStatus)
}
