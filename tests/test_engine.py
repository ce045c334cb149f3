"""Tests for the IncidentEngine command surface."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from config import IncidentPriority, IncidentStatus
from core import (
    ConfigurationException,
    InvalidStateException,
    InvalidTransitionException,
    ResourceNotFoundException,
    ValidationException,
)
from incidents.application import IncidentUpdateDTO
from incidents.application.services import IncidentEngine
from incidents.domain import SLAClock, SLAConfig, StaticSLAConfigProvider

from conftest import T0, VALID_INCIDENT


async def _create(engine, **overrides):
    return await engine.create({**VALID_INCIDENT, **overrides}, "reporter-1")


class TestCreate:

    async def test_new_incident(self, engine, repository, dispatcher, recorder):
        incident = await _create(engine)

        assert incident.status == IncidentStatus.NEW
        assert incident.priority == IncidentPriority.HIGH
        assert incident.reporter_id == "reporter-1"
        assert incident.created_at == incident.updated_at == T0
        assert (incident.sla.response_target_min, incident.sla.resolution_target_min) == (60, 480)
        assert [entry.field for entry in incident.history] == ["created"]
        assert len(repository) == 1

        await dispatcher.drain()
        [event] = recorder.events
        assert event.to_dict()["type"] == "Created"
        assert event.payload["priority"] == IncidentPriority.HIGH

    async def test_defaults_and_normalization(self, engine):
        incident = await engine.create(
            {
                "title": "  VPN drops every hour  ",
                "description": "Connection resets at roughly the same minute.",
                "category": "NETWORK",
                "tags": ["vpn", " vpn ", ""],
            },
            "reporter-2",
        )

        assert incident.title == "VPN drops every hour"
        assert incident.priority == IncidentPriority.MEDIUM
        assert incident.category.value == "network"
        assert incident.tags == ["vpn"]

    @pytest.mark.parametrize("overrides", [
        {"title": "Hi"},
        {"description": "short"},
        {"priority": "URGENT"},
        {"category": "plumbing"},
    ])
    async def test_invalid_input(self, engine, repository, overrides):
        with pytest.raises(ValidationException) as exc_info:
            await _create(engine, **overrides)

        assert exc_info.value.details["errors"]
        assert len(repository) == 0

    async def test_actor_required(self, engine):
        with pytest.raises(ValidationException):
            await engine.create(VALID_INCIDENT, "")

    async def test_unmapped_priority_is_config_error(self, repository, clock):
        config = SLAConfig(sla_targets={
            "HIGH": {"response_target_min": 60, "resolution_target_min": 480},
        })
        engine = IncidentEngine(
            repository, sla_clock=SLAClock(StaticSLAConfigProvider(config)), clock=clock
        )

        with pytest.raises(ConfigurationException):
            await _create(engine, priority="LOW")
        assert len(repository) == 0


class TestAssign:

    async def test_assign_new_incident(self, engine, clock, dispatcher, recorder):
        incident = await _create(engine)
        clock.advance(minutes=20)

        assigned = await engine.assign(incident.id, "agent-7", "lead-1")

        assert assigned.assignee_id == "agent-7"
        assert assigned.status == IncidentStatus.ASSIGNED
        assert assigned.sla.response_actual_min == 20
        assert [entry.field for entry in assigned.history] == ["created", "assigneeId", "status"]

        await dispatcher.drain()
        assert recorder.types == ["Created", "Assigned"]

    async def test_same_assignee_is_noop(self, engine, dispatcher, recorder):
        incident = await _create(engine)
        await engine.assign(incident.id, "agent-7", "lead-1")

        again = await engine.assign(incident.id, "agent-7", "lead-1")

        assert len(again.history) == 3
        await dispatcher.drain()
        assert recorder.types == ["Created", "Assigned"]

    async def test_reassign_keeps_status(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")

        reassigned = await engine.assign(incident.id, "agent-9", "lead-1")

        assert reassigned.status == IncidentStatus.IN_PROGRESS
        assert reassigned.history[-1].field == "assigneeId"

    async def test_cannot_assign_closed(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "CLOSED", "agent-1")

        with pytest.raises(InvalidStateException):
            await engine.assign(incident.id, "agent-9", "lead-1")


class TestTransitions:

    async def test_illegal_transition_is_not_persisted(self, engine, dispatcher, recorder):
        incident = await _create(engine)

        with pytest.raises(InvalidTransitionException) as exc_info:
            await engine.transition(incident.id, "RESOLVED", "agent-1")

        stored = await engine.get(incident.id)
        assert stored.status == IncidentStatus.NEW
        assert len(stored.history) == 1
        assert "ASSIGNED" in exc_info.value.details["allowed"]

        await dispatcher.drain()
        assert recorder.types == ["Created"]

    async def test_lifecycle_with_reopen(self, engine, clock, dispatcher, recorder):
        incident = await _create(engine)
        clock.advance(minutes=10)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")
        clock.advance(minutes=90)
        resolved = await engine.transition(incident.id, "RESOLVED", "agent-1")
        assert resolved.sla.resolution_actual_min == 100

        clock.advance(minutes=30)
        reopened = await engine.reopen(incident.id, "Still failing", "reporter-1")

        assert reopened.status == IncidentStatus.IN_PROGRESS
        assert reopened.reopen_count == 1
        assert reopened.sla.resolution_actual_min is None
        assert reopened.comments[-1].content == "Incident reopened: Still failing"

        clock.advance(minutes=400)
        resolved_again = await engine.transition(incident.id, "RESOLVED", "agent-1")
        assert resolved_again.sla.resolution_actual_min == 530
        assert resolved_again.sla.resolution_breached is True

        await dispatcher.drain()
        assert recorder.types == [
            "Created", "StatusChanged", "StatusChanged", "Reopened", "StatusChanged",
        ]
        reopened_event = recorder.events[3]
        assert reopened_event.payload["reason"] == "Still failing"
        assert reopened_event.payload["reopenCount"] == 1

    async def test_reopen_reason_length(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")
        await engine.transition(incident.id, "RESOLVED", "agent-1")

        with pytest.raises(ValidationException):
            await engine.reopen(incident.id, "x" * 501, "reporter-1")

    async def test_unknown_incident(self, engine):
        with pytest.raises(ResourceNotFoundException):
            await engine.transition("missing", "IN_PROGRESS", "agent-1")


class TestResolutionSummary:

    async def test_summary_is_stored_and_audited(self, engine, dispatcher, recorder):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")

        resolved = await engine.transition(
            incident.id, "RESOLVED", "agent-1", resolution_summary="  Replaced the PSU  "
        )

        assert resolved.resolution_summary == "Replaced the PSU"
        assert [(e.field, e.new_value) for e in resolved.history[-2:]] == [
            ("status", "RESOLVED"), ("resolutionSummary", "Replaced the PSU"),
        ]
        await dispatcher.drain()
        assert recorder.events[-1].payload["resolutionSummary"] == "Replaced the PSU"

    async def test_summary_only_when_resolving(self, engine):
        incident = await _create(engine)

        with pytest.raises(ValidationException):
            await engine.transition(incident.id, "IN_PROGRESS", "agent-1", resolution_summary="Done")

        stored = await engine.get(incident.id)
        assert stored.status == IncidentStatus.NEW
        assert len(stored.history) == 1

    async def test_summary_length(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")

        with pytest.raises(ValidationException):
            await engine.transition(incident.id, "RESOLVED", "agent-1", resolution_summary="x" * 2001)

    async def test_blank_summary_is_ignored(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")

        resolved = await engine.transition(incident.id, "RESOLVED", "agent-1", resolution_summary="   ")

        assert resolved.resolution_summary is None
        assert resolved.history[-1].field == "status"

    async def test_reopen_clears_summary(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")
        await engine.transition(incident.id, "RESOLVED", "agent-1", resolution_summary="Reseated RAM")

        reopened = await engine.reopen(incident.id, "Crashed again", "reporter-1")

        assert reopened.resolution_summary is None
        last = reopened.history[-1]
        assert (last.field, last.old_value, last.new_value) == ("resolutionSummary", "Reseated RAM", None)


class TestComments:

    async def test_comments_are_not_audited(self, engine, dispatcher, recorder):
        incident = await _create(engine)

        comment = await engine.comment(incident.id, "agent-1", "Checked the cable", True)

        stored = await engine.get(incident.id)
        assert [c.id for c in stored.comments] == [comment.id]
        assert len(stored.history) == 1

        await dispatcher.drain()
        assert recorder.events[-1].payload == {"commentId": comment.id, "isInternal": True}

    async def test_reporter_view_hides_internal(self, engine):
        incident = await _create(engine)
        public = await engine.comment(incident.id, "agent-1", "We are on it", False)
        await engine.comment(incident.id, "agent-1", "Escalate to vendor?", True)

        visible = await engine.comments(incident.id, include_internal=False)

        assert [c.id for c in visible] == [public.id]
        assert len(await engine.comments(incident.id)) == 2

    async def test_comment_length(self, engine):
        incident = await _create(engine)

        with pytest.raises(ValidationException):
            await engine.comment(incident.id, "agent-1", "x" * 1001)

    async def test_visibility_change_is_audited(self, engine):
        incident = await _create(engine)
        comment = await engine.comment(incident.id, "agent-1", "Password is in the vault", False)

        updated = await engine.set_comment_visibility(incident.id, comment.id, True, "lead-1")

        stored = await engine.get(incident.id)
        assert updated.is_internal is True
        assert stored.history[-1].field == f"comment:{comment.id}:isInternal"
        assert (stored.history[-1].old_value, stored.history[-1].new_value) == (False, True)


class TestUpdate:

    async def test_priority_change_retargets_sla(self, engine, dispatcher, recorder):
        incident = await _create(engine)

        updated = await engine.update(incident.id, {"priority": "critical"}, "lead-1")

        assert updated.priority == IncidentPriority.CRITICAL
        assert (updated.sla.response_target_min, updated.sla.resolution_target_min) == (30, 240)
        entry = updated.history[-1]
        assert (entry.field, entry.old_value, entry.new_value) == ("priority", "HIGH", "CRITICAL")

        await dispatcher.drain()
        assert recorder.events[-1].payload == {"fields": ["priority"]}

    async def test_only_changed_fields_are_audited(self, engine):
        incident = await _create(engine)

        updated = await engine.update(
            incident.id,
            IncidentUpdateDTO(title=VALID_INCIDENT["title"], equipment_id="LAP-0042"),
            "lead-1",
        )

        assert [entry.field for entry in updated.history] == ["created", "equipmentId"]

    async def test_nothing_changed(self, engine, dispatcher, recorder):
        incident = await _create(engine)

        same = await engine.update(incident.id, {"title": VALID_INCIDENT["title"]}, "lead-1")

        assert same.history == incident.history
        await dispatcher.drain()
        assert recorder.types == ["Created"]

    async def test_null_title_rejected(self, engine):
        incident = await _create(engine)

        with pytest.raises(ValidationException):
            await engine.update(incident.id, {"title": None}, "lead-1")

    async def test_priority_frozen_after_resolution(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")
        await engine.transition(incident.id, "RESOLVED", "agent-1")

        with pytest.raises(InvalidStateException):
            await engine.update(incident.id, {"priority": "LOW"}, "lead-1")

        updated = await engine.update(incident.id, {"tags": ["hardware-swap"]}, "lead-1")
        assert updated.tags == ["hardware-swap"]


class TestEscalateAndSatisfaction:

    async def test_escalate(self, engine, dispatcher, recorder):
        incident = await _create(engine)

        escalated = await engine.escalate(incident.id, "CEO laptop", "desk-lead", "agent-1")

        assert escalated.is_escalated is True
        assert escalated.escalated_at == T0
        assert [entry.field for entry in escalated.history[1:]] == [
            "isEscalated", "escalationReason", "escalatedTo", "escalatedAt",
        ]
        assert escalated.history[-1].new_value == "2026-01-05T09:00:00Z"
        await dispatcher.drain()
        assert recorder.events[-1].payload["escalatedTo"] == "desk-lead"

    async def test_re_escalation_audits_new_time(self, engine, clock):
        incident = await _create(engine)
        await engine.escalate(incident.id, "CEO laptop", "desk-lead", "agent-1")
        clock.advance(minutes=30)

        again = await engine.escalate(incident.id, "CEO laptop", "desk-lead", "agent-2")

        assert again.escalated_at == T0 + timedelta(minutes=30)
        last = again.history[-1]
        assert (last.field, last.old_value, last.new_value) == (
            "escalatedAt", "2026-01-05T09:00:00Z", "2026-01-05T09:30:00Z",
        )

    async def test_escalate_requires_open_incident(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "CANCELLED", "agent-1")

        with pytest.raises(InvalidStateException):
            await engine.escalate(incident.id, "Too late", None, "agent-1")

    async def test_escalate_requires_reason(self, engine):
        incident = await _create(engine)

        with pytest.raises(ValidationException):
            await engine.escalate(incident.id, " ", None, "agent-1")

    async def test_rating_requires_resolution(self, engine):
        incident = await _create(engine)

        with pytest.raises(InvalidStateException):
            await engine.rate_satisfaction(incident.id, 5, None, "reporter-1")

    @pytest.mark.parametrize("rating", [0, 6, True, "5"])
    async def test_rating_range(self, engine, rating):
        incident = await _create(engine)

        with pytest.raises(ValidationException):
            await engine.rate_satisfaction(incident.id, rating, None, "reporter-1")

    async def test_rate_resolved_incident(self, engine):
        incident = await _create(engine)
        await engine.transition(incident.id, "IN_PROGRESS", "agent-1")
        await engine.transition(incident.id, "RESOLVED", "agent-1")

        rated = await engine.rate_satisfaction(incident.id, 4, "Quick fix", "reporter-1")

        assert (rated.satisfaction_rating, rated.satisfaction_comment) == (4, "Quick fix")
        assert [entry.field for entry in rated.history[-2:]] == [
            "satisfactionRating", "satisfactionComment",
        ]


class TestDelete:

    async def test_soft_delete(self, engine):
        incident = await _create(engine)

        await engine.delete(incident.id, "lead-1")

        with pytest.raises(ResourceNotFoundException):
            await engine.get(incident.id)
        assert (await engine.get(incident.id, include_deleted=True)).is_deleted is True
        history = await engine.history(incident.id)
        assert history[-1].field == "isDeleted"
        assert (await engine.query()).total == 0
        assert (await engine.query({"include_deleted": True})).total == 1

    async def test_commands_on_deleted_incident(self, engine):
        incident = await _create(engine)
        await engine.delete(incident.id, "lead-1")

        with pytest.raises(InvalidStateException):
            await engine.comment(incident.id, "agent-1", "Anyone there?")


class TestPublishing:

    async def test_publish_failure_keeps_mutation(self, repository, clock):
        dispatcher = MagicMock()
        dispatcher.publish.side_effect = RuntimeError("broker down")
        engine = IncidentEngine(repository, dispatcher=dispatcher, clock=clock)

        incident = await _create(engine)

        assert (await engine.get(incident.id)).status == IncidentStatus.NEW
        dispatcher.publish.assert_called_once()

    async def test_sla_status(self, engine, clock):
        incident = await _create(engine, priority="CRITICAL")
        clock.advance(minutes=200)

        snapshot = await engine.sla_status(incident.id)

        assert snapshot.remaining_resolution_minutes == 40
        assert snapshot.state.value == "at_risk"

    async def test_sla_status_of_incident_closed_unresolved(self, engine, clock):
        incident = await _create(engine, priority="CRITICAL")
        clock.advance(minutes=5)
        await engine.transition(incident.id, "CLOSED", "agent-1")
        clock.advance(minutes=10_000)

        snapshot = await engine.sla_status(incident.id)

        assert snapshot.state.value == "met"
        assert snapshot.resolution_breached is False
        assert snapshot.remaining_resolution_minutes == 0
