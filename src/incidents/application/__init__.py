"""
Incident Application Layer
==========================

Application layer for the incident lifecycle module.

Contains:
- Services: IncidentEngine orchestrating the domain services and the repository
- Notifications: in-process fan-out of lifecycle events
- DTOs: Data transfer objects for commands, queries and API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from incidents.application.dto import (
    AssignRequest,
    AuditEntryResponse,
    CommentCreateRequest,
    CommentResponse,
    CommentVisibilityRequest,
    EscalateRequest,
    IncidentCreateDTO,
    IncidentFilter,
    IncidentListResponse,
    IncidentPage,
    IncidentResponse,
    IncidentSort,
    IncidentStatistics,
    IncidentStatisticsResponse,
    IncidentUpdateDTO,
    QueryResult,
    ReopenRequest,
    SatisfactionRequest,
    SLAStatusResponse,
    StatusChangeRequest,
)
from incidents.application.notifications import (
    WILDCARD_TOPIC,
    NotificationDispatcher,
    Subscription,
    topic_for,
)
from incidents.application.services import IIncidentRepository, IncidentEngine

__all__ = [
    # DTOs
    "AssignRequest",
    "AuditEntryResponse",
    "CommentCreateRequest",
    "CommentResponse",
    "CommentVisibilityRequest",
    "EscalateRequest",
    "IncidentCreateDTO",
    "IncidentFilter",
    "IncidentListResponse",
    "IncidentPage",
    "IncidentResponse",
    "IncidentSort",
    "IncidentStatistics",
    "IncidentStatisticsResponse",
    "IncidentUpdateDTO",
    "QueryResult",
    "ReopenRequest",
    "SatisfactionRequest",
    "SLAStatusResponse",
    "StatusChangeRequest",
    # Notifications
    "WILDCARD_TOPIC",
    "NotificationDispatcher",
    "Subscription",
    "topic_for",
    # Services
    "IncidentEngine",
    # Repository Interfaces
    "IIncidentRepository",
]
