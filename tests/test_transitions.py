"""Tests for the status graph and the reopen cycle."""

from datetime import timedelta

import pytest

from config import IncidentStatus
from core import InvalidTransitionException, ValidationException
from incidents.domain import (
    ALLOWED_TRANSITIONS,
    AuditTrail,
    CommentStore,
    TransitionValidator,
    allowed_targets,
)

from conftest import T0, make_incident


@pytest.fixture
def validator(sla_clock, id_factory):
    return TransitionValidator(sla_clock, AuditTrail(), CommentStore(id_factory))


class TestGraph:

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(IncidentStatus)

    @pytest.mark.parametrize("status", [IncidentStatus.CLOSED, IncidentStatus.CANCELLED])
    def test_terminal_statuses_have_no_exit(self, status):
        assert allowed_targets(status) == frozenset()

    def test_new_cannot_jump_to_resolved(self, validator):
        with pytest.raises(InvalidTransitionException) as exc_info:
            validator.validate(IncidentStatus.NEW, IncidentStatus.RESOLVED)

        error = exc_info.value
        assert error.kind == "invalid_transition"
        assert error.details["allowed"] == sorted(
            status.value for status in ALLOWED_TRANSITIONS[IncidentStatus.NEW]
        )

    def test_resolved_only_closes(self, validator):
        validator.validate(IncidentStatus.RESOLVED, IncidentStatus.CLOSED)
        with pytest.raises(InvalidTransitionException):
            validator.validate(IncidentStatus.RESOLVED, IncidentStatus.IN_PROGRESS)

    def test_unknown_target_is_validation_error(self, validator):
        with pytest.raises(ValidationException):
            validator.validate(IncidentStatus.NEW, "DONE")


class TestApply:

    def test_illegal_transition_leaves_incident_untouched(self, validator):
        incident = make_incident()

        with pytest.raises(InvalidTransitionException):
            validator.apply(incident, IncidentStatus.RESOLVED, "agent-1", T0 + timedelta(minutes=5))

        assert incident.status == IncidentStatus.NEW
        assert incident.history == []
        assert incident.updated_at == T0
        assert incident.sla.response_actual_min is None

    def test_leaving_new_records_first_response(self, validator):
        incident = make_incident()

        validator.apply(incident, "IN_PROGRESS", "agent-1", T0 + timedelta(minutes=12))

        assert incident.status == IncidentStatus.IN_PROGRESS
        assert incident.sla.response_actual_min == 12
        assert incident.updated_at == T0 + timedelta(minutes=12)
        [entry] = incident.history
        assert (entry.field, entry.old_value, entry.new_value) == ("status", "NEW", "IN_PROGRESS")
        assert entry.sequence == 1

    def test_resolve_and_close_stamp_timestamps(self, validator):
        incident = make_incident(status=IncidentStatus.IN_PROGRESS)
        resolved_at = T0 + timedelta(minutes=90)
        closed_at = T0 + timedelta(minutes=120)

        validator.apply(incident, IncidentStatus.RESOLVED, "agent-1", resolved_at)
        validator.apply(incident, IncidentStatus.CLOSED, "agent-1", closed_at)

        assert incident.resolved_at == resolved_at
        assert incident.sla.resolution_actual_min == 90
        assert incident.closed_at == closed_at
        assert [entry.sequence for entry in incident.history] == [1, 2]


class TestReopen:

    def test_reopen_cycle(self, validator):
        incident = make_incident(status=IncidentStatus.IN_PROGRESS)
        validator.apply(incident, IncidentStatus.RESOLVED, "agent-1", T0 + timedelta(minutes=60))
        history_before = len(incident.history)

        validator.reopen(incident, "  Still broken  ", "reporter-1", T0 + timedelta(minutes=80))
        validator.apply(incident, IncidentStatus.RESOLVED, "agent-1", T0 + timedelta(minutes=300))

        assert len(incident.history) == history_before + 2
        assert incident.reopen_count == 1
        assert incident.last_reopened_by == "reporter-1"
        assert incident.last_reopened_at == T0 + timedelta(minutes=80)
        assert incident.sla.resolution_actual_min == 300
        assert incident.sla.resolution_breached is True

        [comment] = incident.comments
        assert comment.content == "Incident reopened: Still broken"
        assert comment.is_internal is False
        assert comment.author_id == "reporter-1"

    def test_reopen_clears_resolution_and_close(self, validator):
        incident = make_incident(status=IncidentStatus.IN_PROGRESS)
        validator.apply(incident, IncidentStatus.RESOLVED, "agent-1", T0 + timedelta(minutes=60))
        validator.apply(incident, IncidentStatus.CLOSED, "agent-1", T0 + timedelta(minutes=70))

        validator.reopen(incident, "Printer jammed again", "reporter-1", T0 + timedelta(minutes=90))

        assert incident.status == IncidentStatus.IN_PROGRESS
        assert incident.resolved_at is None
        assert incident.closed_at is None
        assert incident.sla.resolution_actual_min is None

    def test_reopen_requires_reason(self, validator):
        incident = make_incident(status=IncidentStatus.RESOLVED)

        with pytest.raises(ValidationException):
            validator.reopen(incident, "   ", "reporter-1", T0)

        assert incident.status == IncidentStatus.RESOLVED
        assert incident.comments == []

    @pytest.mark.parametrize("status", [
        IncidentStatus.NEW, IncidentStatus.IN_PROGRESS, IncidentStatus.CANCELLED,
    ])
    def test_only_resolved_or_closed_reopen(self, validator, status):
        incident = make_incident(status=status)

        with pytest.raises(InvalidTransitionException):
            validator.reopen(incident, "Needs more work", "reporter-1", T0)
