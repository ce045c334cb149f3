"""Shared test fixtures."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from config import IncidentPriority, IncidentStatus
from incidents.application import NotificationDispatcher
from incidents.application.services import IncidentEngine
from incidents.domain import (
    Incident,
    SLAClock,
    SLAConfig,
    SLARecord,
    StaticSLAConfigProvider,
)
from incidents.infrastructure import InMemoryIncidentRepository


T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class RecordingListener:
    """Collects every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [event.type.value for event in self.events]


def make_incident(
    incident_id="inc-1",
    status=IncidentStatus.NEW,
    priority=IncidentPriority.CRITICAL,
    created_at=T0,
    **kwargs
) -> Incident:
    """Build an incident directly, bypassing the engine."""
    targets = SLAConfig().get_targets(IncidentPriority(priority))
    kwargs.setdefault("sla", SLARecord(
        response_target_min=targets.response_target_min,
        resolution_target_min=targets.resolution_target_min,
    ))
    return Incident(
        id=incident_id,
        title=kwargs.pop("title", "Laptop will not boot"),
        description=kwargs.pop("description", "Black screen after the BIOS logo appears."),
        status=status,
        priority=priority,
        category=kwargs.pop("category", "hardware"),
        reporter_id=kwargs.pop("reporter_id", "reporter-1"),
        created_at=created_at,
        updated_at=kwargs.pop("updated_at", created_at),
        **kwargs
    )


VALID_INCIDENT = {
    "title": "Laptop will not boot",
    "description": "Black screen after the BIOS logo appears.",
    "priority": "HIGH",
    "category": "hardware",
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sla_config():
    return SLAConfig()


@pytest.fixture
def sla_clock(sla_config):
    return SLAClock(StaticSLAConfigProvider(sla_config))


@pytest.fixture
def repository():
    return InMemoryIncidentRepository()


@pytest.fixture
def dispatcher():
    return NotificationDispatcher(queue_size=100)


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def engine(repository, dispatcher, sla_clock, clock, id_factory):
    return IncidentEngine(
        repository,
        dispatcher=dispatcher,
        sla_clock=sla_clock,
        clock=clock,
        id_factory=id_factory,
    )


@pytest.fixture
def recorder(dispatcher):
    listener = RecordingListener()
    dispatcher.subscribe("incident:*", listener)
    return listener
