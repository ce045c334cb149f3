"""
Incident Application DTOs
=========================

Data Transfer Objects for the incident API layer.

These Pydantic models handle serialization/deserialization and validation
for commands, queries and responses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from config import (
    COMMENT_MAX_LENGTH,
    DESCRIPTION_MAX_LENGTH,
    DESCRIPTION_MIN_LENGTH,
    MAX_SATISFACTION_RATING,
    MIN_SATISFACTION_RATING,
    REASON_MAX_LENGTH,
    RESOLUTION_SUMMARY_MAX_LENGTH,
    SATISFACTION_COMMENT_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
    IncidentCategory,
    IncidentPriority,
    IncidentStatus,
    SLAState,
    SortField,
)
from incidents.domain import AuditEntry, Comment, Incident, SLASnapshot


def _upper(v: Any) -> Any:
    return v.strip().upper() if isinstance(v, str) else v


def _lower(v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


def _split(v: Any) -> Any:
    """Accept a scalar, a comma separated string or a list."""
    if v is None:
        return None
    if isinstance(v, str):
        v = [part for part in v.split(",")]
    if isinstance(v, (list, tuple, set)):
        items = [item.strip() if isinstance(item, str) else item for item in v]
        items = [item for item in items if item not in ("", None)]
        return items or None
    return [v]


def _clean_tags(tags: List[str]) -> List[str]:
    """Drop blanks and duplicates, keeping the first occurrence."""
    seen: List[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


# ========== Command DTOs ==========

class IncidentCreateDTO(BaseModel):
    """DTO for submitting a new incident."""
    title: str = Field(..., min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    description: str = Field(
        ...,
        min_length=DESCRIPTION_MIN_LENGTH,
        max_length=DESCRIPTION_MAX_LENGTH
    )
    priority: IncidentPriority = Field(default=IncidentPriority.MEDIUM)
    category: IncidentCategory = Field(default=IncidentCategory.OTHER)
    reporter_id: Optional[str] = Field(
        None,
        min_length=1,
        description="Reporter; defaults to the acting user"
    )
    equipment_id: Optional[str] = Field(None, description="Affected equipment (read-only reference)")
    due_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("title", "description", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v: Any) -> Any:
        return _lower(v)

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: List[str]) -> List[str]:
        return _clean_tags(v)


class IncidentUpdateDTO(BaseModel):
    """
    DTO for editing an incident.

    Only fields that were explicitly provided are applied; sending
    ``equipment_id: null`` clears the reference.
    """
    title: Optional[str] = Field(None, min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(
        None,
        min_length=DESCRIPTION_MIN_LENGTH,
        max_length=DESCRIPTION_MAX_LENGTH
    )
    priority: Optional[IncidentPriority] = None
    category: Optional[IncidentCategory] = None
    equipment_id: Optional[str] = None
    due_date: Optional[datetime] = None
    tags: Optional[List[str]] = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v: Any) -> Any:
        return _lower(v)

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_tags(v) if v is not None else None

    @model_validator(mode="after")
    def reject_null_required(self) -> "IncidentUpdateDTO":
        for name in ("title", "description", "priority", "category", "tags"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict:
        """Explicitly provided fields and their new values."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class AssignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)


class StatusChangeRequest(BaseModel):
    status: IncidentStatus
    resolution_summary: Optional[str] = Field(
        None,
        max_length=RESOLUTION_SUMMARY_MAX_LENGTH,
        description="How the incident was resolved; only with status RESOLVED"
    )

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        return _upper(v)


class ReopenRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=REASON_MAX_LENGTH)


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=COMMENT_MAX_LENGTH)
    is_internal: bool = False


class CommentVisibilityRequest(BaseModel):
    is_internal: bool


class SatisfactionRequest(BaseModel):
    rating: int = Field(..., ge=MIN_SATISFACTION_RATING, le=MAX_SATISFACTION_RATING)
    comment: Optional[str] = Field(None, max_length=SATISFACTION_COMMENT_MAX_LENGTH)


class EscalateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=REASON_MAX_LENGTH)
    escalated_to: Optional[str] = Field(None, description="Team or person the incident goes to")


# ========== Query DTOs ==========

class IncidentFilter(BaseModel):
    """
    Filter contract of incident listings.

    List fields accept a single value, a list, or a comma separated
    string. Date bounds are inclusive and apply to ``created_at``.
    """
    status: Optional[List[IncidentStatus]] = None
    priority: Optional[List[IncidentPriority]] = None
    category: Optional[List[IncidentCategory]] = None
    assignee_id: Optional[str] = None
    reporter_id: Optional[str] = None
    equipment_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = Field(None, max_length=200)
    is_escalated: Optional[bool] = None
    include_deleted: bool = False

    @field_validator("status", "priority", mode="before")
    @classmethod
    def split_upper(cls, v: Any) -> Any:
        items = _split(v)
        return [_upper(item) for item in items] if items else None

    @field_validator("category", mode="before")
    @classmethod
    def split_lower(cls, v: Any) -> Any:
        items = _split(v)
        return [_lower(item) for item in items] if items else None

    @field_validator("assignee_id", "reporter_id", "equipment_id", "search", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("date_from", "date_to")
    @classmethod
    def dates_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_date_range(self) -> "IncidentFilter":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def matches(self, incident: Incident) -> bool:
        """Evaluate the filter against one incident."""
        if incident.is_deleted and not self.include_deleted:
            return False
        if self.status and incident.status not in self.status:
            return False
        if self.priority and incident.priority not in self.priority:
            return False
        if self.category and incident.category not in self.category:
            return False
        if self.assignee_id and incident.assignee_id != self.assignee_id:
            return False
        if self.reporter_id and incident.reporter_id != self.reporter_id:
            return False
        if self.equipment_id and incident.equipment_id != self.equipment_id:
            return False
        if self.is_escalated is not None and incident.is_escalated != self.is_escalated:
            return False
        if self.date_from and incident.created_at < self.date_from:
            return False
        if self.date_to and incident.created_at > self.date_to:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in incident.title.lower() and needle not in incident.description.lower():
                return False
        return True


_SORT_ALIASES = {
    "createdat": SortField.CREATED_AT,
    "created_at": SortField.CREATED_AT,
    "updatedat": SortField.UPDATED_AT,
    "updated_at": SortField.UPDATED_AT,
    "priority": SortField.PRIORITY,
    "status": SortField.STATUS,
}


class IncidentSort(BaseModel):
    """Sort key from the allow-list plus direction."""
    field: SortField = SortField.CREATED_AT
    descending: bool = True

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, value: Any = None, order: Optional[str] = None) -> "IncidentSort":
        """
        Normalize a sort request.

        Accepts ``createdAt``, ``created_at``, ``-priority`` (descending)
        or ``priority:asc``. Unknown fields fall back to newest first.
        """
        if isinstance(value, IncidentSort):
            return value
        if value is None or not str(value).strip():
            return cls(descending=(order or "desc").lower() != "asc")

        raw = str(getattr(value, "value", value)).strip()
        descending = None
        if raw.startswith("-"):
            raw, descending = raw[1:], True
        elif raw.startswith("+"):
            raw, descending = raw[1:], False
        if ":" in raw:
            raw, direction = raw.split(":", 1)
            descending = direction.strip().lower() != "asc"
        if descending is None:
            descending = (order or "desc").strip().lower() != "asc"

        sort_field = _SORT_ALIASES.get(raw.strip().lower())
        if sort_field is None:
            return cls()
        return cls(field=sort_field, descending=descending)


@dataclass
class QueryResult:
    """What a repository returns for one page of a query."""
    items: List[Incident]
    total: int


@dataclass
class IncidentPage:
    """One page of incidents with the normalized paging parameters."""
    items: List[Incident]
    total: int
    page: int
    limit: int
    sort: IncidentSort = field(default_factory=IncidentSort)

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


@dataclass
class IncidentStatistics:
    """
    Dashboard counts over the incidents matching a filter.

    ``sla_breached`` counts incidents whose response or resolution target
    was recorded as missed; ``avg_resolution_minutes`` averages the
    recorded resolution times and is None when nothing was resolved.
    """
    total: int = 0
    by_status: Dict[IncidentStatus, int] = field(
        default_factory=lambda: {status: 0 for status in IncidentStatus}
    )
    by_priority: Dict[IncidentPriority, int] = field(
        default_factory=lambda: {priority: 0 for priority in IncidentPriority}
    )
    sla_breached: int = 0
    escalated: int = 0
    avg_resolution_minutes: Optional[float] = None

    @classmethod
    def from_incidents(cls, incidents: Iterable[Incident]) -> "IncidentStatistics":
        stats = cls()
        resolution_times = []
        for incident in incidents:
            stats.total += 1
            stats.by_status[incident.status] += 1
            stats.by_priority[incident.priority] += 1
            if incident.sla.response_breached or incident.sla.resolution_breached:
                stats.sla_breached += 1
            if incident.is_escalated:
                stats.escalated += 1
            if incident.sla.resolution_actual_min is not None:
                resolution_times.append(incident.sla.resolution_actual_min)
        if resolution_times:
            stats.avg_resolution_minutes = sum(resolution_times) / len(resolution_times)
        return stats


# ========== Response DTOs ==========

class SLAResponse(BaseModel):
    response_target_min: int
    response_actual_min: Optional[int] = None
    response_breached: bool
    resolution_target_min: int
    resolution_actual_min: Optional[int] = None
    resolution_breached: bool


class CommentResponse(BaseModel):
    id: str
    incident_id: str
    author_id: str
    content: str
    created_at: datetime
    is_internal: bool

    @classmethod
    def from_domain(cls, comment: Comment) -> "CommentResponse":
        return cls(
            id=comment.id,
            incident_id=comment.incident_id,
            author_id=comment.author_id,
            content=comment.content,
            created_at=comment.created_at,
            is_internal=comment.is_internal,
        )


class AuditEntryResponse(BaseModel):
    sequence: int
    field: str
    old_value: Any = None
    new_value: Any = None
    actor_id: str
    timestamp: datetime

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            sequence=entry.sequence,
            field=entry.field,
            old_value=entry.old_value,
            new_value=entry.new_value,
            actor_id=entry.actor_id,
            timestamp=entry.timestamp,
        )


class IncidentResponse(BaseModel):
    """Response model for one incident."""
    id: str
    title: str
    description: str
    status: IncidentStatus
    priority: IncidentPriority
    category: IncidentCategory
    reporter_id: str
    assignee_id: Optional[str] = None
    equipment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    resolution_summary: Optional[str] = None
    due_date: Optional[datetime] = None
    sla: SLAResponse
    reopen_count: int = 0
    last_reopened_at: Optional[datetime] = None
    last_reopened_by: Optional[str] = None
    is_escalated: bool = False
    escalation_reason: Optional[str] = None
    escalated_to: Optional[str] = None
    escalated_at: Optional[datetime] = None
    satisfaction_rating: Optional[int] = None
    satisfaction_comment: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    comments: List[CommentResponse] = Field(default_factory=list)
    is_deleted: bool = False

    @classmethod
    def from_domain(cls, incident: Incident, include_internal: bool = True) -> "IncidentResponse":
        """Build the response; reporter-facing views pass ``include_internal=False``."""
        return cls(
            id=incident.id,
            title=incident.title,
            description=incident.description,
            status=incident.status,
            priority=incident.priority,
            category=incident.category,
            reporter_id=incident.reporter_id,
            assignee_id=incident.assignee_id,
            equipment_id=incident.equipment_id,
            created_at=incident.created_at,
            updated_at=incident.updated_at,
            resolved_at=incident.resolved_at,
            closed_at=incident.closed_at,
            resolution_summary=incident.resolution_summary,
            due_date=incident.due_date,
            sla=SLAResponse(**incident.sla.to_dict()),
            reopen_count=incident.reopen_count,
            last_reopened_at=incident.last_reopened_at,
            last_reopened_by=incident.last_reopened_by,
            is_escalated=incident.is_escalated,
            escalation_reason=incident.escalation_reason,
            escalated_to=incident.escalated_to,
            escalated_at=incident.escalated_at,
            satisfaction_rating=incident.satisfaction_rating,
            satisfaction_comment=incident.satisfaction_comment,
            tags=list(incident.tags),
            comments=[
                CommentResponse.from_domain(comment)
                for comment in incident.comments
                if include_internal or not comment.is_internal
            ],
            is_deleted=incident.is_deleted,
        )


class IncidentListResponse(BaseModel):
    """Response model for a page of incidents."""
    items: List[IncidentResponse]
    total: int = Field(..., description="Number of incidents matching the filter")
    page: int
    limit: int
    pages: int
    sort: str
    order: str

    @classmethod
    def from_page(cls, page: IncidentPage) -> "IncidentListResponse":
        return cls(
            items=[IncidentResponse.from_domain(incident) for incident in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
            pages=page.pages,
            sort=page.sort.field.value,
            order="desc" if page.sort.descending else "asc",
        )


class SLAStatusResponse(BaseModel):
    """Derived SLA view of an incident at the time of the request."""
    incident_id: str
    evaluated_at: datetime
    response_deadline: datetime
    resolution_deadline: datetime
    remaining_resolution_minutes: int
    state: SLAState
    response_breached: bool
    resolution_breached: bool

    @classmethod
    def from_snapshot(cls, snapshot: SLASnapshot) -> "SLAStatusResponse":
        return cls(
            incident_id=snapshot.incident_id,
            evaluated_at=snapshot.evaluated_at,
            response_deadline=snapshot.response_deadline,
            resolution_deadline=snapshot.resolution_deadline,
            remaining_resolution_minutes=snapshot.remaining_resolution_minutes,
            state=snapshot.state,
            response_breached=snapshot.response_breached,
            resolution_breached=snapshot.resolution_breached,
        )


class IncidentStatisticsResponse(BaseModel):
    """Counts by status and priority for dashboards."""
    total: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]
    sla_breached: int = Field(..., description="Incidents with a missed response or resolution target")
    escalated: int
    avg_resolution_minutes: Optional[float] = None

    @classmethod
    def from_domain(cls, stats: IncidentStatistics) -> "IncidentStatisticsResponse":
        return cls(
            total=stats.total,
            by_status={status.value: count for status, count in stats.by_status.items()},
            by_priority={priority.value: count for priority, count in stats.by_priority.items()},
            sla_breached=stats.sla_breached,
            escalated=stats.escalated,
            avg_resolution_minutes=stats.avg_resolution_minutes,
        )
