"""
Incident Infrastructure Repositories
====================================

Concrete implementations of the incident repository interface.

- InMemoryIncidentRepository: process-local store used by tests and local runs
- SQLAlchemyIncidentRepository: async SQLAlchemy store (PostgreSQL/asyncpg,
  SQLite/aiosqlite)

Both enforce single-writer semantics per incident with an optimistic
``version`` check: saving an incident whose version is no longer the stored
one raises ConflictException.
"""

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import PRIORITY_RANK, STATUS_RANK, IncidentPriority, IncidentStatus, SortField
from core import ConflictException, ResourceNotFoundException
from incidents.application.dto import IncidentFilter, IncidentSort, IncidentStatistics, QueryResult
from incidents.application.services import IIncidentRepository
from incidents.domain import AuditEntry, Comment, Incident, SLARecord
from incidents.infrastructure.models import AuditEntryModel, CommentModel, IncidentModel
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _sort_key(sort: IncidentSort):
    if sort.field == SortField.PRIORITY:
        return lambda incident: (PRIORITY_RANK[incident.priority], incident.created_at, incident.id)
    if sort.field == SortField.STATUS:
        return lambda incident: (STATUS_RANK[incident.status], incident.created_at, incident.id)
    if sort.field == SortField.UPDATED_AT:
        return lambda incident: (incident.updated_at, incident.id)
    return lambda incident: (incident.created_at, incident.id)


class InMemoryIncidentRepository(IIncidentRepository):
    """
    Thread-safe in-memory repository.

    Incidents are deep-copied on the way in and out so callers never share
    state with the store.
    """

    def __init__(self):
        self._incidents: Dict[str, Incident] = {}
        self._lock = threading.Lock()

    async def load(self, incident_id: str) -> Incident:
        with self._lock:
            stored = self._incidents.get(incident_id)
            if stored is None:
                raise ResourceNotFoundException("Incident", incident_id)
            return copy.deepcopy(stored)

    async def save(self, incident: Incident) -> Incident:
        with self._lock:
            stored = self._incidents.get(incident.id)
            stored_version = stored.version if stored is not None else 0
            if stored_version != incident.version:
                raise ConflictException(incident.id, incident.version, stored_version)

            snapshot = copy.deepcopy(incident)
            snapshot.version = stored_version + 1
            self._incidents[incident.id] = snapshot
            return copy.deepcopy(snapshot)

    async def query(
        self,
        filters: IncidentFilter,
        sort: IncidentSort,
        page: int,
        limit: int
    ) -> QueryResult:
        with self._lock:
            matches = [item for item in self._incidents.values() if filters.matches(item)]

        matches.sort(key=_sort_key(sort), reverse=sort.descending)
        offset = (page - 1) * limit
        return QueryResult(
            items=[copy.deepcopy(item) for item in matches[offset:offset + limit]],
            total=len(matches),
        )

    async def statistics(self, filters: IncidentFilter) -> IncidentStatistics:
        with self._lock:
            return IncidentStatistics.from_incidents(
                item for item in self._incidents.values() if filters.matches(item)
            )

    def __len__(self) -> int:
        return len(self._incidents)


# ========== SQLAlchemy ==========

def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _columns(incident: Incident) -> Dict[str, Any]:
    sla = incident.sla
    return {
        "title": incident.title,
        "description": incident.description,
        "status": incident.status.value,
        "priority": incident.priority.value,
        "category": incident.category.value,
        "reporter_id": incident.reporter_id,
        "assignee_id": incident.assignee_id,
        "equipment_id": incident.equipment_id,
        "created_at": incident.created_at,
        "updated_at": incident.updated_at,
        "resolved_at": incident.resolved_at,
        "closed_at": incident.closed_at,
        "resolution_summary": incident.resolution_summary,
        "due_date": incident.due_date,
        "response_target_min": sla.response_target_min,
        "response_actual_min": sla.response_actual_min,
        "response_breached": sla.response_breached,
        "resolution_target_min": sla.resolution_target_min,
        "resolution_actual_min": sla.resolution_actual_min,
        "resolution_breached": sla.resolution_breached,
        "reopen_count": incident.reopen_count,
        "last_reopened_at": incident.last_reopened_at,
        "last_reopened_by": incident.last_reopened_by,
        "is_escalated": incident.is_escalated,
        "escalation_reason": incident.escalation_reason,
        "escalated_to": incident.escalated_to,
        "escalated_at": incident.escalated_at,
        "satisfaction_rating": incident.satisfaction_rating,
        "satisfaction_comment": incident.satisfaction_comment,
        "tags": list(incident.tags),
        "is_deleted": incident.is_deleted,
    }


def _comment_model(comment: Comment, position: int) -> CommentModel:
    return CommentModel(
        id=comment.id,
        incident_id=comment.incident_id,
        position=position,
        author_id=comment.author_id,
        content=comment.content,
        is_internal=comment.is_internal,
        created_at=comment.created_at,
    )


def _audit_model(incident_id: str, entry: AuditEntry) -> AuditEntryModel:
    return AuditEntryModel(
        incident_id=incident_id,
        sequence=entry.sequence,
        field=entry.field,
        old_value=entry.old_value,
        new_value=entry.new_value,
        actor_id=entry.actor_id,
        timestamp=entry.timestamp,
    )


def to_domain(model: IncidentModel) -> Incident:
    """Convert an ORM row (with its comments and history) to the aggregate."""
    return Incident(
        id=model.id,
        title=model.title,
        description=model.description,
        status=model.status,
        priority=model.priority,
        category=model.category,
        reporter_id=model.reporter_id,
        created_at=_utc(model.created_at),
        updated_at=_utc(model.updated_at),
        sla=SLARecord(
            response_target_min=model.response_target_min,
            resolution_target_min=model.resolution_target_min,
            response_actual_min=model.response_actual_min,
            response_breached=model.response_breached,
            resolution_actual_min=model.resolution_actual_min,
            resolution_breached=model.resolution_breached,
        ),
        assignee_id=model.assignee_id,
        equipment_id=model.equipment_id,
        resolved_at=_utc(model.resolved_at),
        closed_at=_utc(model.closed_at),
        resolution_summary=model.resolution_summary,
        due_date=_utc(model.due_date),
        reopen_count=model.reopen_count,
        last_reopened_at=_utc(model.last_reopened_at),
        last_reopened_by=model.last_reopened_by,
        is_escalated=model.is_escalated,
        escalation_reason=model.escalation_reason,
        escalated_to=model.escalated_to,
        escalated_at=_utc(model.escalated_at),
        satisfaction_rating=model.satisfaction_rating,
        satisfaction_comment=model.satisfaction_comment,
        tags=list(model.tags or []),
        comments=[
            Comment(
                id=row.id,
                incident_id=row.incident_id,
                author_id=row.author_id,
                content=row.content,
                created_at=_utc(row.created_at),
                is_internal=row.is_internal,
            )
            for row in model.comments
        ],
        history=[
            AuditEntry(
                sequence=row.sequence,
                field=row.field,
                old_value=row.old_value,
                new_value=row.new_value,
                actor_id=row.actor_id,
                timestamp=_utc(row.timestamp),
            )
            for row in model.history
        ],
        is_deleted=model.is_deleted,
        version=model.version,
    )


class SQLAlchemyIncidentRepository(IIncidentRepository):
    """
    SQLAlchemy implementation of the incident repository.

    ``save`` issues a conditional ``UPDATE ... WHERE version = :expected``;
    comments and audit entries are only ever inserted, except for the
    visibility flag of a comment.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def load(self, incident_id: str) -> Incident:
        stmt = (
            select(IncidentModel)
            .where(IncidentModel.id == incident_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise ResourceNotFoundException("Incident", incident_id)
        return to_domain(model)

    async def save(self, incident: Incident) -> Incident:
        stored_version = await self._session.scalar(
            select(IncidentModel.version).where(IncidentModel.id == incident.id)
        )

        if stored_version is None:
            if incident.version != 0:
                raise ConflictException(incident.id, incident.version, None)
            await self._insert(incident)
        else:
            await self._update(incident, stored_version)

        await self._session.commit()
        logger.debug(
            "Incident persisted",
            extra={"incident_id": incident.id, "version": incident.version + 1}
        )
        return await self.load(incident.id)

    async def _insert(self, incident: Incident) -> None:
        model = IncidentModel(id=incident.id, version=1, **_columns(incident))
        model.comments = [
            _comment_model(comment, position)
            for position, comment in enumerate(incident.comments)
        ]
        model.history = [_audit_model(incident.id, entry) for entry in incident.history]
        self._session.add(model)
        await self._session.flush()

    async def _update(self, incident: Incident, stored_version: int) -> None:
        stmt = (
            update(IncidentModel)
            .where(
                IncidentModel.id == incident.id,
                IncidentModel.version == incident.version,
            )
            .values(version=incident.version + 1, **_columns(incident))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            await self._session.rollback()
            raise ConflictException(incident.id, incident.version, stored_version)

        rows = await self._session.execute(
            select(CommentModel.id, CommentModel.is_internal)
            .where(CommentModel.incident_id == incident.id)
        )
        existing = {row.id: row.is_internal for row in rows}
        for position, comment in enumerate(incident.comments):
            if comment.id not in existing:
                self._session.add(_comment_model(comment, position))
            elif existing[comment.id] != comment.is_internal:
                await self._session.execute(
                    update(CommentModel)
                    .where(CommentModel.id == comment.id)
                    .values(is_internal=comment.is_internal)
                    .execution_options(synchronize_session=False)
                )

        last_sequence = await self._session.scalar(
            select(func.max(AuditEntryModel.sequence))
            .where(AuditEntryModel.incident_id == incident.id)
        ) or 0
        for entry in incident.history:
            if entry.sequence > last_sequence:
                self._session.add(_audit_model(incident.id, entry))
        await self._session.flush()

    async def query(
        self,
        filters: IncidentFilter,
        sort: IncidentSort,
        page: int,
        limit: int
    ) -> QueryResult:
        conditions = self._conditions(filters)

        total = await self._session.scalar(
            select(func.count()).select_from(IncidentModel).where(*conditions)
        )

        stmt = (
            select(IncidentModel)
            .where(*conditions)
            .order_by(*self._order_by(sort))
            .limit(limit)
            .offset((page - 1) * limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return QueryResult(
            items=[to_domain(model) for model in result.scalars().all()],
            total=total or 0,
        )

    async def statistics(self, filters: IncidentFilter) -> IncidentStatistics:
        conditions = self._conditions(filters)
        stats = IncidentStatistics()

        for column, counts, enum_cls in (
            (IncidentModel.status, stats.by_status, IncidentStatus),
            (IncidentModel.priority, stats.by_priority, IncidentPriority),
        ):
            rows = await self._session.execute(
                select(column, func.count()).where(*conditions).group_by(column)
            )
            for value, count in rows:
                counts[enum_cls(value)] = count

        breached = or_(IncidentModel.response_breached, IncidentModel.resolution_breached)
        row = (await self._session.execute(
            select(
                func.count(),
                func.coalesce(func.sum(case((breached, 1), else_=0)), 0),
                func.coalesce(func.sum(case((IncidentModel.is_escalated, 1), else_=0)), 0),
                func.avg(IncidentModel.resolution_actual_min),
            ).select_from(IncidentModel).where(*conditions)
        )).one()

        stats.total = row[0]
        stats.sla_breached = int(row[1])
        stats.escalated = int(row[2])
        stats.avg_resolution_minutes = float(row[3]) if row[3] is not None else None
        return stats

    @staticmethod
    def _conditions(filters: IncidentFilter) -> List[Any]:
        conditions = []
        if not filters.include_deleted:
            conditions.append(IncidentModel.is_deleted.is_(False))
        if filters.status:
            conditions.append(IncidentModel.status.in_([s.value for s in filters.status]))
        if filters.priority:
            conditions.append(IncidentModel.priority.in_([p.value for p in filters.priority]))
        if filters.category:
            conditions.append(IncidentModel.category.in_([c.value for c in filters.category]))
        if filters.assignee_id:
            conditions.append(IncidentModel.assignee_id == filters.assignee_id)
        if filters.reporter_id:
            conditions.append(IncidentModel.reporter_id == filters.reporter_id)
        if filters.equipment_id:
            conditions.append(IncidentModel.equipment_id == filters.equipment_id)
        if filters.is_escalated is not None:
            conditions.append(IncidentModel.is_escalated.is_(filters.is_escalated))
        if filters.date_from:
            conditions.append(IncidentModel.created_at >= _utc(filters.date_from))
        if filters.date_to:
            conditions.append(IncidentModel.created_at <= _utc(filters.date_to))
        if filters.search:
            conditions.append(or_(
                IncidentModel.title.icontains(filters.search, autoescape=True),
                IncidentModel.description.icontains(filters.search, autoescape=True),
            ))
        return conditions

    @staticmethod
    def _order_by(sort: IncidentSort) -> List[Any]:
        if sort.field == SortField.PRIORITY:
            primary = case(
                {priority.value: rank for priority, rank in PRIORITY_RANK.items()},
                value=IncidentModel.priority,
            )
        elif sort.field == SortField.STATUS:
            primary = case(
                {status.value: rank for status, rank in STATUS_RANK.items()},
                value=IncidentModel.status,
            )
        elif sort.field == SortField.UPDATED_AT:
            primary = IncidentModel.updated_at
        else:
            primary = IncidentModel.created_at

        columns = [primary]
        if sort.field in (SortField.PRIORITY, SortField.STATUS):
            columns.append(IncidentModel.created_at)
        columns.append(IncidentModel.id)
        return [column.desc() if sort.descending else column.asc() for column in columns]
