"""
SLA Value Objects
==================

Immutable value objects and pure SLA calculations for the incident domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from config import IncidentPriority, IncidentStatus, SLAState
from core import ConfigurationException
from incidents.domain.entities import Incident


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, truncated toward zero."""
    return int((end - start).total_seconds() / 60)


class SLATargets(BaseModel):
    """Response and resolution budgets of one priority tier, in minutes."""
    response_target_min: int = Field(ge=1, description="Minutes until first response")
    resolution_target_min: int = Field(ge=1, description="Minutes until resolution")

    model_config = {"frozen": True}


DEFAULT_SLA_TARGETS: Dict[IncidentPriority, SLATargets] = {
    IncidentPriority.LOW: SLATargets(response_target_min=480, resolution_target_min=2880),
    IncidentPriority.MEDIUM: SLATargets(response_target_min=240, resolution_target_min=1440),
    IncidentPriority.HIGH: SLATargets(response_target_min=60, resolution_target_min=480),
    IncidentPriority.CRITICAL: SLATargets(response_target_min=30, resolution_target_min=240),
}


class SLAConfig(BaseModel):
    """
    SLA Configuration loaded from YAML.

    Maps each priority to its response/resolution targets. A priority that
    is missing from the table is reported as a configuration error when an
    incident of that priority is created, rather than silently defaulted.
    """
    sla_targets: Dict[IncidentPriority, SLATargets] = Field(
        default_factory=lambda: dict(DEFAULT_SLA_TARGETS),
        description="SLA targets in minutes by priority"
    )
    at_risk_threshold_percent: int = Field(
        default=25,
        ge=0,
        le=100,
        description="Remaining-time percentage at which an open incident is at risk"
    )

    @field_validator("sla_targets", mode="before")
    @classmethod
    def normalize_priorities(cls, v: Any) -> Any:
        """Accept priority keys in any case ('high', 'HIGH')."""
        if not isinstance(v, dict):
            return v
        return {
            (key.upper() if isinstance(key, str) else key): value
            for key, value in v.items()
        }

    def get_targets(self, priority: Any) -> Optional[SLATargets]:
        return self.sla_targets.get(priority)


class SLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""


class StaticSLAConfigProvider(SLAConfigProvider):
    """Provider that always returns the same configuration."""

    def __init__(self, config: Optional[SLAConfig] = None):
        self._config = config or SLAConfig()

    def get_config(self) -> SLAConfig:
        return self._config


@dataclass(frozen=True)
class SLASnapshot:
    """Derived, never persisted, view of an incident's SLA at an instant."""
    incident_id: str
    evaluated_at: datetime
    response_deadline: datetime
    resolution_deadline: datetime
    remaining_resolution_minutes: int
    state: SLAState
    response_breached: bool
    resolution_breached: bool

    def to_dict(self) -> dict:
        return {
            "incident_id": self.incident_id,
            "evaluated_at": self.evaluated_at.isoformat(),
            "response_deadline": self.response_deadline.isoformat(),
            "resolution_deadline": self.resolution_deadline.isoformat(),
            "remaining_resolution_minutes": self.remaining_resolution_minutes,
            "state": self.state.value,
            "response_breached": self.response_breached,
            "resolution_breached": self.resolution_breached,
        }


class SLAClock:
    """
    Pure functions for SLA calculations.

    Holds no state of its own beyond the configuration provider, so a
    single instance can be shared freely between concurrent readers. The
    ``mark_*``/``clear_*`` functions write only to the incident passed in.
    """

    def __init__(self, config_provider: Optional[SLAConfigProvider] = None):
        self._config_provider = config_provider or StaticSLAConfigProvider()

    @property
    def config(self) -> SLAConfig:
        return self._config_provider.get_config()

    def targets_for(self, priority: Any) -> SLATargets:
        """
        Look up the SLA targets of a priority tier.

        Raises:
            ConfigurationException: unknown priority or no target configured
        """
        try:
            tier = IncidentPriority(priority)
        except ValueError:
            raise ConfigurationException(
                f"Unknown priority '{priority}'",
                {"priority": str(priority)}
            ) from None

        targets = self.config.get_targets(tier)
        if targets is None:
            raise ConfigurationException(
                f"No SLA target configured for priority {tier.value}",
                {"priority": tier.value}
            )
        return targets

    @staticmethod
    def mark_response(incident: Incident, now: datetime, actor_id: Optional[str] = None) -> None:
        """Record the first response; no-op when it was already measured."""
        sla = incident.sla
        if sla.response_actual_min is not None:
            return
        sla.response_actual_min = elapsed_minutes(incident.created_at, now)
        sla.response_breached = sla.response_actual_min > sla.response_target_min

    @staticmethod
    def mark_resolution(incident: Incident, now: datetime) -> None:
        """Record resolution time and whether the resolution target was missed."""
        sla = incident.sla
        sla.resolution_actual_min = elapsed_minutes(incident.created_at, now)
        sla.resolution_breached = sla.resolution_actual_min > sla.resolution_target_min
        incident.resolved_at = now

    @staticmethod
    def clear_resolution(incident: Incident) -> None:
        """Forget the last resolution so the next one is measured afresh."""
        incident.resolved_at = None
        incident.sla.resolution_actual_min = None
        incident.sla.resolution_breached = False

    @staticmethod
    def remaining_resolution_minutes(incident: Incident, now: datetime) -> int:
        """
        Minutes left before the resolution target; negative when overdue.

        Finished incidents (resolved, closed or cancelled) report 0.
        """
        if incident.status in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED,
                               IncidentStatus.CANCELLED):
            return 0
        return incident.sla.resolution_target_min - elapsed_minutes(incident.created_at, now)

    @staticmethod
    def response_deadline(incident: Incident) -> datetime:
        return incident.created_at + timedelta(minutes=incident.sla.response_target_min)

    @staticmethod
    def resolution_deadline(incident: Incident) -> datetime:
        return incident.created_at + timedelta(minutes=incident.sla.resolution_target_min)

    def resolution_state(self, incident: Incident, now: datetime) -> SLAState:
        """
        Classify the resolution SLA at ``now``.

        Resolved incidents are MET or BREACHED by their measurement, and
        incidents closed without a resolution by their closing time. Open
        ones are BREACHED once overdue and AT_RISK when the remaining share
        of the budget is at or below the configured threshold.
        """
        sla = incident.sla
        if sla.resolution_actual_min is not None:
            return SLAState.BREACHED if sla.resolution_breached else SLAState.MET
        if incident.status == IncidentStatus.CANCELLED:
            return SLAState.MET

        if incident.status == IncidentStatus.CLOSED:
            # Closed without a resolution: the clock stopped at closing time
            stopped_at = incident.closed_at or now
            overdue = elapsed_minutes(incident.created_at, stopped_at) > sla.resolution_target_min
            return SLAState.BREACHED if overdue else SLAState.MET

        remaining = self.remaining_resolution_minutes(incident, now)
        if remaining < 0:
            return SLAState.BREACHED

        percentage = remaining / sla.resolution_target_min * 100
        if percentage <= self.config.at_risk_threshold_percent:
            return SLAState.AT_RISK
        return SLAState.ON_TRACK

    def snapshot(self, incident: Incident, now: datetime) -> SLASnapshot:
        state = self.resolution_state(incident, now)
        if incident.sla.resolution_actual_min is not None:
            resolution_breached = incident.sla.resolution_breached
        else:
            resolution_breached = state == SLAState.BREACHED
        return SLASnapshot(
            incident_id=incident.id,
            evaluated_at=now,
            response_deadline=self.response_deadline(incident),
            resolution_deadline=self.resolution_deadline(incident),
            remaining_resolution_minutes=self.remaining_resolution_minutes(incident, now),
            state=state,
            response_breached=incident.sla.response_breached,
            resolution_breached=resolution_breached,
        )
