"""
Incident Domain Layer
=====================

Domain layer for the incident lifecycle module.

Contains:
- Entities: Incident aggregate, Comment, AuditEntry, LifecycleEvent
- Value Objects: SLA configuration, targets and snapshots
- Domain Services: SLAClock, TransitionValidator, AuditTrail, CommentStore

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from incidents.domain.entities import (
    AuditEntry,
    Comment,
    Incident,
    LifecycleEvent,
    SLARecord,
    utc_isoformat,
)
from incidents.domain.value_objects import (
    DEFAULT_SLA_TARGETS,
    SLAClock,
    SLAConfig,
    SLAConfigProvider,
    SLASnapshot,
    SLATargets,
    StaticSLAConfigProvider,
    elapsed_minutes,
)
from incidents.domain.audit import AuditTrail, HistoryView
from incidents.domain.comments import CommentStore, CommentView
from incidents.domain.transitions import (
    ALLOWED_TRANSITIONS,
    TransitionValidator,
    allowed_targets,
)

__all__ = [
    # Entities
    "AuditEntry",
    "Comment",
    "Incident",
    "LifecycleEvent",
    "SLARecord",
    "utc_isoformat",
    # Value Objects
    "DEFAULT_SLA_TARGETS",
    "SLAConfig",
    "SLAConfigProvider",
    "SLASnapshot",
    "SLATargets",
    "StaticSLAConfigProvider",
    "elapsed_minutes",
    # Domain Services
    "SLAClock",
    "AuditTrail",
    "HistoryView",
    "CommentStore",
    "CommentView",
    "ALLOWED_TRANSITIONS",
    "TransitionValidator",
    "allowed_targets",
]
