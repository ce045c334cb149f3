"""
Incident Application Services
=============================

The IncidentEngine orchestrates every command on an incident:

    validate shape -> business rule -> SLA bookkeeping -> audit ->
    repository.save() -> dispatcher.publish()

Following SOLID principles:
- Single Responsibility: rules live in the domain services, the engine only composes them
- Dependency Inversion: the engine depends on the repository interface, not on a database
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel, ValidationError

from config import (
    COMMENT_MAX_LENGTH,
    MAX_SATISFACTION_RATING,
    MIN_SATISFACTION_RATING,
    REASON_MAX_LENGTH,
    RESOLUTION_SUMMARY_MAX_LENGTH,
    SATISFACTION_COMMENT_MAX_LENGTH,
    EventType,
    IncidentStatus,
    Settings,
    settings as default_settings,
)
from core import (
    InvalidStateException,
    ResourceNotFoundException,
    ValidationException,
)
from incidents.application.dto import (
    IncidentCreateDTO,
    IncidentFilter,
    IncidentPage,
    IncidentSort,
    IncidentStatistics,
    IncidentUpdateDTO,
    QueryResult,
)
from incidents.application.notifications import NotificationDispatcher
from incidents.domain import (
    AuditTrail,
    Comment,
    CommentStore,
    HistoryView,
    Incident,
    LifecycleEvent,
    SLAClock,
    SLARecord,
    SLASnapshot,
    TransitionValidator,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interface (Dependency Inversion) ==========

class IIncidentRepository(ABC):
    """
    Interface for incident persistence.

    Implementations provide single-writer semantics per incident: ``save``
    raises ConflictException when the stored version moved on since
    the incident was loaded.
    """

    @abstractmethod
    async def load(self, incident_id: str) -> Incident:
        """Load an incident; raises ResourceNotFoundException if unknown."""

    @abstractmethod
    async def save(self, incident: Incident) -> Incident:
        """Persist the aggregate; raises ConflictException on version mismatch."""

    @abstractmethod
    async def query(
        self,
        filters: IncidentFilter,
        sort: IncidentSort,
        page: int,
        limit: int
    ) -> QueryResult:
        """Return one page of matching incidents and the total match count."""

    @abstractmethod
    async def statistics(self, filters: IncidentFilter) -> IncidentStatistics:
        """Aggregate counts over every incident matching the filter."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ========== Application Service ==========

class IncidentEngine:
    """
    Command surface of the incident lifecycle.

    Every mutating command persists through the repository first and only
    then publishes its lifecycle event; a failing publish is logged and
    never undoes the mutation.
    """

    def __init__(
        self,
        repository: IIncidentRepository,
        dispatcher: Optional[NotificationDispatcher] = None,
        sla_clock: Optional[SLAClock] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._repository = repository
        self._dispatcher = dispatcher
        self._sla_clock = sla_clock or SLAClock()
        self._settings = settings or default_settings
        self._clock = clock or utc_now
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

        self._audit = AuditTrail()
        self._comments = CommentStore(self._id_factory)
        self._transitions = TransitionValidator(self._sla_clock, self._audit, self._comments)

    @property
    def sla_clock(self) -> SLAClock:
        return self._sla_clock

    # ========== Commands ==========

    async def create(
        self,
        dto: Union[IncidentCreateDTO, dict],
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """
        Submit a new incident.

        The incident starts in NEW with SLA targets taken from its priority.

        Raises:
            ValidationException: malformed input
            ConfigurationException: no SLA target for the priority
        """
        _require_actor(actor_id)
        data = _parse(IncidentCreateDTO, dto)
        now = self._now(now)

        targets = self._sla_clock.targets_for(data.priority)
        incident = Incident(
            id=self._id_factory(),
            title=data.title,
            description=data.description,
            status=IncidentStatus.NEW,
            priority=data.priority,
            category=data.category,
            reporter_id=data.reporter_id or actor_id,
            created_at=now,
            updated_at=now,
            sla=SLARecord(
                response_target_min=targets.response_target_min,
                resolution_target_min=targets.resolution_target_min,
            ),
            equipment_id=data.equipment_id,
            due_date=data.due_date,
            tags=list(data.tags),
        )
        self._audit.append(incident, "created", None, IncidentStatus.NEW, actor_id, now)

        saved = await self._repository.save(incident)
        logger.info(
            "Incident created",
            extra={
                "incident_id": saved.id,
                "priority": saved.priority.value,
                "category": saved.category.value,
                "actor_id": actor_id,
            }
        )
        self._publish(EventType.CREATED, saved, actor_id, now,
                      status=saved.status, priority=saved.priority)
        return saved

    async def assign(
        self,
        incident_id: str,
        assignee_id: str,
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """
        Set the assignee; a NEW incident moves to ASSIGNED.

        Raises:
            InvalidStateException: incident is closed, cancelled or deleted
        """
        _require_actor(actor_id)
        if not assignee_id or not str(assignee_id).strip():
            raise ValidationException("assignee_id is required", {"field": "assignee_id"})
        now = self._now(now)
        incident = await self._load_active(incident_id)

        if incident.is_terminal:
            raise InvalidStateException(
                f"Cannot assign a {incident.status.value} incident",
                {"incident_id": incident.id, "status": incident.status.value}
            )
        if incident.assignee_id == assignee_id:
            return incident

        self._audit.append(incident, "assigneeId", incident.assignee_id, assignee_id, actor_id, now)
        incident.assignee_id = assignee_id
        incident.touch(now)
        if incident.status == IncidentStatus.NEW:
            self._transitions.apply(incident, IncidentStatus.ASSIGNED, actor_id, now)

        saved = await self._repository.save(incident)
        logger.info(
            "Incident assigned",
            extra={"incident_id": saved.id, "assignee_id": assignee_id, "actor_id": actor_id}
        )
        self._publish(EventType.ASSIGNED, saved, actor_id, now,
                      assigneeId=assignee_id, status=saved.status)
        return saved

    async def transition(
        self,
        incident_id: str,
        target_status: Union[IncidentStatus, str],
        actor_id: str,
        now: Optional[datetime] = None,
        resolution_summary: Optional[str] = None
    ) -> Incident:
        """
        Move the incident along the status graph.

        A resolution summary is stored when resolving; blank summaries are ignored.

        Raises:
            InvalidTransitionException: target is not reachable from the current status
            ValidationException: summary too long, or given for another target status
        """
        _require_actor(actor_id)
        if resolution_summary is not None:
            resolution_summary = resolution_summary.strip() or None
            _check_length(resolution_summary, "resolution_summary", RESOLUTION_SUMMARY_MAX_LENGTH)
        now = self._now(now)
        incident = await self._load_active(incident_id)
        previous = incident.status

        self._transitions.apply(incident, target_status, actor_id, now, resolution_summary)

        saved = await self._repository.save(incident)
        logger.info(
            "Incident status changed",
            extra={
                "incident_id": saved.id,
                "from_status": previous.value,
                "to_status": saved.status.value,
                "actor_id": actor_id,
            }
        )
        payload = {"status": saved.status, "previousStatus": previous}
        if resolution_summary is not None:
            payload["resolutionSummary"] = saved.resolution_summary
        self._publish(EventType.STATUS_CHANGED, saved, actor_id, now, **payload)
        return saved

    async def reopen(
        self,
        incident_id: str,
        reason: str,
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """Reopen a RESOLVED or CLOSED incident with a reason."""
        _require_actor(actor_id)
        _check_length(reason, "reason", REASON_MAX_LENGTH)
        now = self._now(now)
        incident = await self._load_active(incident_id)
        previous = incident.status

        self._transitions.reopen(incident, reason, actor_id, now)

        saved = await self._repository.save(incident)
        logger.info(
            "Incident reopened",
            extra={
                "incident_id": saved.id,
                "reopen_count": saved.reopen_count,
                "actor_id": actor_id,
            }
        )
        self._publish(EventType.REOPENED, saved, actor_id, now,
                      status=saved.status, previousStatus=previous,
                      reason=reason.strip(), reopenCount=saved.reopen_count,
                      commentId=saved.comments[-1].id)
        return saved

    async def comment(
        self,
        incident_id: str,
        author_id: str,
        content: str,
        is_internal: bool = False,
        now: Optional[datetime] = None
    ) -> Comment:
        """Add a comment; comments are self-describing and not audited."""
        _require_actor(author_id)
        _check_length(content, "content", COMMENT_MAX_LENGTH)
        now = self._now(now)
        incident = await self._load_active(incident_id)

        added = self._comments.add(incident, author_id, content, is_internal, now)
        incident.touch(now)

        saved = await self._repository.save(incident)
        logger.info(
            "Comment added",
            extra={
                "incident_id": saved.id,
                "comment_id": added.id,
                "is_internal": added.is_internal,
            }
        )
        self._publish(EventType.COMMENT_ADDED, saved, author_id, now,
                      commentId=added.id, isInternal=added.is_internal)
        return added

    async def set_comment_visibility(
        self,
        incident_id: str,
        comment_id: str,
        is_internal: bool,
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Comment:
        """Flip a comment between internal and public."""
        _require_actor(actor_id)
        now = self._now(now)
        incident = await self._load_active(incident_id)

        current = self._comments.get(incident, comment_id)
        if current.is_internal == bool(is_internal):
            return current

        updated = self._comments.set_visibility(incident, comment_id, is_internal)
        self._audit.append(incident, f"comment:{comment_id}:isInternal",
                           current.is_internal, updated.is_internal, actor_id, now)
        incident.touch(now)

        saved = await self._repository.save(incident)
        self._publish(EventType.UPDATED, saved, actor_id, now,
                      fields=["comments"], commentId=comment_id,
                      isInternal=updated.is_internal)
        return updated

    async def update(
        self,
        incident_id: str,
        dto: Union[IncidentUpdateDTO, dict],
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """
        Edit descriptive fields of an incident.

        Priority and category are frozen once the incident is resolved.
        A priority change re-targets the SLA.
        """
        _require_actor(actor_id)
        data = _parse(IncidentUpdateDTO, dto)
        now = self._now(now)
        incident = await self._load_active(incident_id)

        changes = {
            name: value for name, value in data.changes().items()
            if getattr(incident, name) != value
        }
        if not changes:
            return incident

        if ("priority" in changes or "category" in changes) and \
                (incident.is_resolved or incident.is_terminal):
            raise InvalidStateException(
                f"Priority and category cannot change once the incident is {incident.status.value}",
                {"incident_id": incident.id, "status": incident.status.value}
            )
        if incident.is_terminal:
            raise InvalidStateException(
                f"Cannot edit a {incident.status.value} incident",
                {"incident_id": incident.id, "status": incident.status.value}
            )

        if "priority" in changes:
            targets = self._sla_clock.targets_for(changes["priority"])
            sla = incident.sla
            sla.response_target_min = targets.response_target_min
            sla.resolution_target_min = targets.resolution_target_min
            if sla.response_actual_min is not None:
                sla.response_breached = sla.response_actual_min > sla.response_target_min

        audit_names = {
            "title": "title",
            "description": "description",
            "priority": "priority",
            "category": "category",
            "equipment_id": "equipmentId",
            "due_date": "dueDate",
            "tags": "tags",
        }
        for name in audit_names:
            if name not in changes:
                continue
            self._audit.append(incident, audit_names[name], getattr(incident, name),
                               changes[name], actor_id, now)
            setattr(incident, name, list(changes[name]) if name == "tags" else changes[name])
        incident.touch(now)

        saved = await self._repository.save(incident)
        changed = [audit_names[name] for name in audit_names if name in changes]
        logger.info(
            "Incident updated",
            extra={"incident_id": saved.id, "fields": changed, "actor_id": actor_id}
        )
        self._publish(EventType.UPDATED, saved, actor_id, now, fields=changed)
        return saved

    async def escalate(
        self,
        incident_id: str,
        reason: str,
        escalated_to: Optional[str],
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """Flag an open incident as escalated."""
        _require_actor(actor_id)
        if reason is None or not reason.strip():
            raise ValidationException("Escalation reason is required", {"field": "reason"})
        _check_length(reason, "reason", REASON_MAX_LENGTH)
        now = self._now(now)
        incident = await self._load_active(incident_id)

        if not incident.is_open:
            raise InvalidStateException(
                f"Cannot escalate a {incident.status.value} incident",
                {"incident_id": incident.id, "status": incident.status.value}
            )

        escalation = {
            "is_escalated": ("isEscalated", True),
            "escalation_reason": ("escalationReason", reason.strip()),
            "escalated_to": ("escalatedTo", escalated_to),
            "escalated_at": ("escalatedAt", now),
        }
        for name, (audit_field, value) in escalation.items():
            if getattr(incident, name) != value:
                self._audit.append(incident, audit_field, getattr(incident, name), value, actor_id, now)
                setattr(incident, name, value)
        incident.touch(now)

        saved = await self._repository.save(incident)
        logger.warning(
            "Incident escalated",
            extra={"incident_id": saved.id, "escalated_to": escalated_to, "actor_id": actor_id}
        )
        self._publish(EventType.ESCALATED, saved, actor_id, now,
                      reason=saved.escalation_reason, escalatedTo=escalated_to,
                      priority=saved.priority, title=saved.title)
        return saved

    async def rate_satisfaction(
        self,
        incident_id: str,
        rating: int,
        comment: Optional[str],
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """
        Record the reporter's satisfaction with a resolved incident.

        Raises:
            ValidationException: rating outside 1..5 or comment too long
            InvalidStateException: incident not RESOLVED or CLOSED
        """
        _require_actor(actor_id)
        if isinstance(rating, bool) or not isinstance(rating, int) or \
                not MIN_SATISFACTION_RATING <= rating <= MAX_SATISFACTION_RATING:
            raise ValidationException(
                f"Rating must be an integer between {MIN_SATISFACTION_RATING} "
                f"and {MAX_SATISFACTION_RATING}",
                {"field": "rating", "value": rating}
            )
        if comment is not None:
            _check_length(comment, "comment", SATISFACTION_COMMENT_MAX_LENGTH)
        now = self._now(now)
        incident = await self._load_active(incident_id)

        if not incident.is_resolved:
            raise InvalidStateException(
                "Satisfaction can only be rated once the incident is resolved",
                {"incident_id": incident.id, "status": incident.status.value}
            )

        self._audit.append(incident, "satisfactionRating", incident.satisfaction_rating,
                           rating, actor_id, now)
        if comment != incident.satisfaction_comment:
            self._audit.append(incident, "satisfactionComment", incident.satisfaction_comment,
                               comment, actor_id, now)
        incident.satisfaction_rating = rating
        incident.satisfaction_comment = comment
        incident.touch(now)

        saved = await self._repository.save(incident)
        self._publish(EventType.UPDATED, saved, actor_id, now,
                      fields=["satisfactionRating"], rating=rating)
        return saved

    async def delete(
        self,
        incident_id: str,
        actor_id: str,
        now: Optional[datetime] = None
    ) -> Incident:
        """Soft-delete: the incident is hidden from default queries but kept."""
        _require_actor(actor_id)
        now = self._now(now)
        incident = await self._load_active(incident_id)

        self._audit.append(incident, "isDeleted", False, True, actor_id, now)
        incident.is_deleted = True
        incident.touch(now)

        saved = await self._repository.save(incident)
        logger.info("Incident deleted", extra={"incident_id": saved.id, "actor_id": actor_id})
        self._publish(EventType.DELETED, saved, actor_id, now)
        return saved

    # ========== Queries ==========

    async def query(
        self,
        filters: Union[IncidentFilter, dict, None] = None,
        sort: Any = None,
        page: Optional[int] = None,
        limit: Optional[int] = None
    ) -> IncidentPage:
        """
        List incidents.

        The filter is validated, the sort key is restricted to the allow-list
        (unknown keys fall back to newest first), ``page`` is at least 1 and
        ``limit`` is clamped to ``[1, incident_max_limit]``.
        """
        normalized = _parse(IncidentFilter, filters or {})
        order = IncidentSort.parse(sort)
        page = max(1, int(page or 1))
        if limit is None:
            limit = self._settings.incident_default_limit
        limit = max(1, min(int(limit), self._settings.incident_max_limit))

        result = await self._repository.query(normalized, order, page, limit)
        return IncidentPage(
            items=list(result.items),
            total=result.total,
            page=page,
            limit=limit,
            sort=order,
        )

    async def statistics(
        self,
        filters: Union[IncidentFilter, dict, None] = None
    ) -> IncidentStatistics:
        """Counts by status and priority, SLA breaches and average resolution time."""
        normalized = _parse(IncidentFilter, filters or {})
        return await self._repository.statistics(normalized)

    async def get(self, incident_id: str, include_deleted: bool = False) -> Incident:
        incident = await self._repository.load(incident_id)
        if incident.is_deleted and not include_deleted:
            raise ResourceNotFoundException("Incident", incident_id)
        return incident

    async def comments(self, incident_id: str, include_internal: bool = True) -> List[Comment]:
        incident = await self.get(incident_id)
        return list(self._comments.list_for(incident, include_internal))

    async def history(self, incident_id: str) -> HistoryView:
        """Audit history, including that of soft-deleted incidents."""
        incident = await self._repository.load(incident_id)
        return self._audit.entries_for(incident)

    async def sla_status(self, incident_id: str, now: Optional[datetime] = None) -> SLASnapshot:
        incident = await self.get(incident_id)
        return self._sla_clock.snapshot(incident, self._now(now))

    # ========== Helpers ==========

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self._clock()

    async def _load_active(self, incident_id: str) -> Incident:
        incident = await self._repository.load(incident_id)
        if incident.is_deleted:
            raise InvalidStateException(
                "Incident has been deleted",
                {"incident_id": incident_id}
            )
        return incident

    def _publish(
        self,
        event_type: EventType,
        incident: Incident,
        actor_id: str,
        now: datetime,
        **payload: Any
    ) -> None:
        if self._dispatcher is None:
            return
        event = LifecycleEvent(
            type=event_type,
            incident_id=incident.id,
            actor_id=actor_id,
            timestamp=now,
            payload=payload,
        )
        try:
            self._dispatcher.publish(event)
        except Exception:
            logger.exception(
                "Failed to publish lifecycle event",
                extra={"incident_id": incident.id, "event_type": event_type.value}
            )


def _parse(model: type, data: Any) -> BaseModel:
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
            }
            for error in e.errors()
        ]
        raise ValidationException(
            f"Invalid {model.__name__}: {errors[0]['field'] or 'input'} {errors[0]['message']}"
            if errors else f"Invalid {model.__name__}",
            {"errors": errors}
        ) from e


def _require_actor(actor_id: Optional[str]) -> None:
    if not actor_id or not str(actor_id).strip():
        raise ValidationException("actor_id is required", {"field": "actor_id"})


def _check_length(value: Optional[str], name: str, max_length: int) -> None:
    if value is not None and len(value) > max_length:
        raise ValidationException(
            f"{name} must be at most {max_length} characters",
            {"field": name, "max_length": max_length}
        )

