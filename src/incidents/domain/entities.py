"""
Incident Domain Entities
========================

Pure Python domain entities for the incident lifecycle.

Following Domain-Driven Design principles, these entities contain
business data and invariants and are free of infrastructure concerns.
The Incident is the aggregate root: its comments and audit history are
only ever changed together with it.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from config import EventType, IncidentCategory, IncidentPriority, IncidentStatus
from core import ValidationException


def utc_isoformat(moment: datetime) -> str:
    """ISO-8601 UTC instant with a trailing ``Z``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SLARecord:
    """Response and resolution targets of an incident with their measurements."""

    response_target_min: int
    resolution_target_min: int
    response_actual_min: Optional[int] = None
    response_breached: bool = False
    resolution_actual_min: Optional[int] = None
    resolution_breached: bool = False

    def to_dict(self) -> dict:
        return {
            "response_target_min": self.response_target_min,
            "response_actual_min": self.response_actual_min,
            "response_breached": self.response_breached,
            "resolution_target_min": self.resolution_target_min,
            "resolution_actual_min": self.resolution_actual_min,
            "resolution_breached": self.resolution_breached,
        }


@dataclass(frozen=True)
class Comment:
    """
    A comment on an incident.

    Internal comments are only visible to support staff and are excluded
    from reporter-facing views.
    """

    id: str
    incident_id: str
    author_id: str
    content: str
    created_at: datetime
    is_internal: bool = False


@dataclass(frozen=True)
class AuditEntry:
    """One immutable record of a single field change."""

    sequence: int
    field: str
    old_value: Any
    new_value: Any
    actor_id: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "actor_id": self.actor_id,
            "timestamp": utc_isoformat(self.timestamp),
        }


@dataclass
class Incident:
    """
    Incident entity representing an IT helpdesk incident.

    Status, priority and category are coerced to their enums on
    construction; any other value is rejected so that only members of the
    closed enumerations are ever observable.
    """

    # Core attributes
    id: str
    title: str
    description: str
    status: IncidentStatus
    priority: IncidentPriority
    category: IncidentCategory
    reporter_id: str

    # Timestamps
    created_at: datetime
    updated_at: datetime

    sla: SLARecord

    assignee_id: Optional[str] = None
    equipment_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    resolution_summary: Optional[str] = None

    # Reopen tracking
    reopen_count: int = 0
    last_reopened_at: Optional[datetime] = None
    last_reopened_by: Optional[str] = None

    # Escalation
    is_escalated: bool = False
    escalation_reason: Optional[str] = None
    escalated_to: Optional[str] = None
    escalated_at: Optional[datetime] = None

    # Satisfaction
    satisfaction_rating: Optional[int] = None
    satisfaction_comment: Optional[str] = None

    tags: List[str] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)
    history: List[AuditEntry] = field(default_factory=list)
    is_deleted: bool = False

    # Storage-managed optimistic concurrency counter
    version: int = field(default=0, compare=False)

    def __post_init__(self):
        """Validate incident on initialization."""
        self.status = _coerce(IncidentStatus, self.status, "status")
        self.priority = _coerce(IncidentPriority, self.priority, "priority")
        self.category = _coerce(IncidentCategory, self.category, "category")

        if not self.reporter_id:
            raise ValidationException("reporter_id is required")

        if self.updated_at < self.created_at:
            raise ValidationException("updated_at cannot be before created_at")

        if self.reopen_count < 0:
            raise ValidationException("reopen_count cannot be negative")

    @property
    def is_open(self) -> bool:
        """Check if incident still needs work."""
        return self.status in (IncidentStatus.NEW, IncidentStatus.ASSIGNED,
                               IncidentStatus.IN_PROGRESS, IncidentStatus.ON_HOLD)

    @property
    def is_resolved(self) -> bool:
        """Check if incident has been resolved or closed."""
        return self.status in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)

    @property
    def is_terminal(self) -> bool:
        return self.status in (IncidentStatus.CLOSED, IncidentStatus.CANCELLED)

    def touch(self, now: datetime) -> None:
        """Record a modification time."""
        if now > self.updated_at:
            self.updated_at = now


@dataclass(frozen=True)
class LifecycleEvent:
    """
    Transient notification of a successful incident mutation.

    Never persisted by the engine; fanned out to subscribers by the
    notification dispatcher.
    """

    type: EventType
    incident_id: str
    actor_id: str
    timestamp: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation: camelCase keys with the payload inlined."""
        data: Dict[str, Any] = {
            "type": self.type.value,
            "incidentId": self.incident_id,
            "actorId": self.actor_id,
            "timestamp": utc_isoformat(self.timestamp),
        }
        for key, value in self.payload.items():
            if key in data:
                continue
            data[key] = _plain(value)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _coerce(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationException(
            f"Invalid {name} '{value}'; expected one of: {allowed}",
            {"field": name, "value": str(value)}
        ) from None


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return utc_isoformat(value)
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return getattr(value, "value", value)
