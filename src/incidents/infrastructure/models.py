"""
Incident Infrastructure Models
==============================

SQLAlchemy ORM models for the incident module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import DESCRIPTION_MAX_LENGTH, TITLE_MAX_LENGTH
from infrastructure.database import Base


class IncidentModel(Base):
    """
    Database model for the Incident aggregate root.

    Maps to the 'incidents' table. ``version`` backs the optimistic
    concurrency check of the repository.
    """
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False)
    description: Mapped[str] = mapped_column(String(DESCRIPTION_MAX_LENGTH), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    equipment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # SLA tracking
    response_target_min: Mapped[int] = mapped_column(Integer, nullable=False)
    response_actual_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolution_target_min: Mapped[int] = mapped_column(Integer, nullable=False)
    resolution_actual_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolution_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Reopen tracking
    reopen_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_reopened_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Escalation
    is_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    escalated_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Satisfaction
    satisfaction_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    satisfaction_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    comments: Mapped[List["CommentModel"]] = relationship(
        back_populates="incident",
        order_by="CommentModel.position",
        lazy="selectin",
        cascade="all",
    )
    history: Mapped[List["AuditEntryModel"]] = relationship(
        back_populates="incident",
        order_by="AuditEntryModel.sequence",
        lazy="selectin",
        cascade="all",
    )


class CommentModel(Base):
    """
    Database model for a comment.

    Maps to the 'incident_comments' table; ``position`` keeps insertion order.
    """
    __tablename__ = "incident_comments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    incident_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("incidents.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    incident: Mapped[IncidentModel] = relationship(back_populates="comments")


class AuditEntryModel(Base):
    """
    Database model for an audit entry.

    Maps to the 'incident_audit_entries' table. Rows are only ever inserted.
    """
    __tablename__ = "incident_audit_entries"

    incident_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("incidents.id"), primary_key=True
    )
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    incident: Mapped[IncidentModel] = relationship(back_populates="history")
