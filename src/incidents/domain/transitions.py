"""
Transition Validator
====================

Legal status graph of an incident and the side effects of moving along it.

Reopening is a distinct operation: RESOLVED and CLOSED incidents go back to
IN_PROGRESS only through ``reopen``, never through a plain transition.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from config import IncidentStatus
from core import InvalidTransitionException, ValidationException
from incidents.domain.audit import AuditTrail
from incidents.domain.comments import CommentStore
from incidents.domain.entities import Incident
from incidents.domain.value_objects import SLAClock
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    IncidentStatus.NEW: frozenset({
        IncidentStatus.ASSIGNED,
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.ON_HOLD,
        IncidentStatus.CANCELLED,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.ASSIGNED: frozenset({
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.ON_HOLD,
        IncidentStatus.RESOLVED,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.IN_PROGRESS: frozenset({
        IncidentStatus.ON_HOLD,
        IncidentStatus.RESOLVED,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.ON_HOLD: frozenset({
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.RESOLVED,
        IncidentStatus.CLOSED,
    }),
    IncidentStatus.RESOLVED: frozenset({IncidentStatus.CLOSED}),
    IncidentStatus.CLOSED: frozenset(),
    IncidentStatus.CANCELLED: frozenset(),
}

REOPENABLE_STATUSES: FrozenSet[IncidentStatus] = frozenset({
    IncidentStatus.RESOLVED,
    IncidentStatus.CLOSED,
})

REOPEN_COMMENT_TEMPLATE = "Incident reopened: {reason}"


def to_status(value) -> IncidentStatus:
    """Coerce a status name, rejecting anything outside the enumeration."""
    try:
        return IncidentStatus(value)
    except ValueError:
        raise ValidationException(
            f"Invalid status '{value}'",
            {"field": "status", "value": str(value)}
        ) from None


def allowed_targets(current: IncidentStatus) -> FrozenSet[IncidentStatus]:
    """Statuses reachable from ``current`` with a plain transition."""
    return ALLOWED_TRANSITIONS.get(IncidentStatus(current), frozenset())


class TransitionValidator:
    """
    Validates and applies status transitions.

    Timestamp and SLA side effects are delegated to the SLAClock; every
    applied change leaves exactly one ``status`` entry in the audit trail,
    followed by a ``resolutionSummary`` entry when the summary changes.
    """

    def __init__(
        self,
        sla_clock: Optional[SLAClock] = None,
        audit_trail: Optional[AuditTrail] = None,
        comment_store: Optional[CommentStore] = None
    ):
        self._sla_clock = sla_clock or SLAClock()
        self._audit = audit_trail or AuditTrail()
        self._comments = comment_store or CommentStore()

    def validate(self, current: IncidentStatus, target: IncidentStatus) -> None:
        """
        Check that ``current -> target`` is an edge of the graph.

        Raises:
            InvalidTransitionException: carrying the allowed targets of ``current``
        """
        allowed = allowed_targets(current)
        target = to_status(target)
        if target not in allowed:
            raise InvalidTransitionException(current, target, allowed)

    def apply(
        self,
        incident: Incident,
        target: IncidentStatus,
        actor_id: str,
        now: datetime,
        resolution_summary: Optional[str] = None
    ) -> Incident:
        """
        Move ``incident`` to ``target``.

        A ``resolution_summary`` may only accompany a move to RESOLVED.
        The incident is left untouched when the transition is illegal.
        """
        current = incident.status
        target = to_status(target)
        self.validate(current, target)
        if resolution_summary is not None and target != IncidentStatus.RESOLVED:
            raise ValidationException(
                "A resolution summary can only be given when resolving",
                {"field": "resolution_summary", "status": target.value}
            )

        incident.status = target
        if current == IncidentStatus.NEW:
            self._sla_clock.mark_response(incident, now, actor_id)
        if target == IncidentStatus.RESOLVED:
            self._sla_clock.mark_resolution(incident, now)
        elif target == IncidentStatus.CLOSED:
            incident.closed_at = now

        incident.touch(now)
        self._audit.append(incident, "status", current, target, actor_id, now)
        if resolution_summary is not None and resolution_summary != incident.resolution_summary:
            self._audit.append(incident, "resolutionSummary", incident.resolution_summary,
                               resolution_summary, actor_id, now)
            incident.resolution_summary = resolution_summary

        logger.debug(
            "Status transition applied",
            extra={
                "incident_id": incident.id,
                "from_status": current.value,
                "to_status": target.value,
            }
        )
        return incident

    def reopen(
        self,
        incident: Incident,
        reason: str,
        actor_id: str,
        now: datetime
    ) -> Incident:
        """
        Bring a resolved or closed incident back to IN_PROGRESS.

        Clears the resolution measurement and summary so the next resolution
        is measured afresh, and records ``reason`` as a public comment.
        """
        current = incident.status
        if current not in REOPENABLE_STATUSES:
            raise InvalidTransitionException(current, IncidentStatus.IN_PROGRESS,
                                             allowed_targets(current))
        if reason is None or not reason.strip():
            raise ValidationException("Reopen reason is required", {"field": "reason"})

        incident.status = IncidentStatus.IN_PROGRESS
        incident.reopen_count += 1
        incident.last_reopened_at = now
        incident.last_reopened_by = actor_id
        incident.closed_at = None
        self._sla_clock.clear_resolution(incident)

        self._comments.add(
            incident,
            actor_id,
            REOPEN_COMMENT_TEMPLATE.format(reason=reason.strip()),
            False,
            now,
        )
        incident.touch(now)
        self._audit.append(incident, "status", current, IncidentStatus.IN_PROGRESS, actor_id, now)
        if incident.resolution_summary is not None:
            self._audit.append(incident, "resolutionSummary", incident.resolution_summary,
                               None, actor_id, now)
            incident.resolution_summary = None
        return incident
