"""
Incident Infrastructure Layer
=============================

Infrastructure implementations for the incident module:
- Models: SQLAlchemy ORM models
- Repositories: In-memory and SQLAlchemy data access
- External: External service integrations (Slack, config watcher, SLA monitor, scheduler)
"""

from incidents.infrastructure.models import AuditEntryModel, CommentModel, IncidentModel
from incidents.infrastructure.repositories import (
    InMemoryIncidentRepository,
    SQLAlchemyIncidentRepository,
)

__all__ = [
    "IncidentModel",
    "CommentModel",
    "AuditEntryModel",
    "InMemoryIncidentRepository",
    "SQLAlchemyIncidentRepository",
]
