"""Tests for the SQLAlchemy repository on a temporary SQLite database."""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config import IncidentPriority, IncidentStatus
from core import ConflictException, ResourceNotFoundException
from incidents.application import IncidentFilter, IncidentSort
from incidents.application.services import IncidentEngine
from incidents.infrastructure import SQLAlchemyIncidentRepository
from infrastructure.database import Base

from conftest import T0, VALID_INCIDENT


@pytest.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'incidents.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def sql_engine(session, sla_clock, clock, id_factory):
    return IncidentEngine(
        SQLAlchemyIncidentRepository(session),
        sla_clock=sla_clock,
        clock=clock,
        id_factory=id_factory,
    )


class TestRoundTrip:

    async def test_save_then_load_is_equal(self, sql_engine, session, clock):
        incident = await sql_engine.create(
            {**VALID_INCIDENT, "tags": ["laptop", "boot"], "due_date": T0 + timedelta(days=2)},
            "reporter-1",
        )
        clock.advance(minutes=15)
        await sql_engine.assign(incident.id, "agent-7", "lead-1")
        await sql_engine.comment(incident.id, "agent-7", "Reseated the RAM", True)
        clock.advance(minutes=45)
        updated = await sql_engine.transition(
            incident.id, "RESOLVED", "agent-7", resolution_summary="Reseated the RAM"
        )

        loaded = await SQLAlchemyIncidentRepository(session).load(incident.id)

        assert loaded == updated
        assert loaded.created_at == T0
        assert loaded.due_date == T0 + timedelta(days=2)
        assert loaded.sla.response_actual_min == 15
        assert loaded.sla.resolution_actual_min == 60
        assert [entry.sequence for entry in loaded.history] == [1, 2, 3, 4, 5]
        assert loaded.resolution_summary == "Reseated the RAM"
        assert loaded.comments[0].is_internal is True

    async def test_visibility_change_is_persisted(self, sql_engine, session_maker):
        incident = await sql_engine.create(VALID_INCIDENT, "reporter-1")
        comment = await sql_engine.comment(incident.id, "agent-1", "Call me back", False)

        await sql_engine.set_comment_visibility(incident.id, comment.id, True, "lead-1")

        async with session_maker() as fresh:
            loaded = await SQLAlchemyIncidentRepository(fresh).load(incident.id)
        assert loaded.comments[0].is_internal is True
        assert loaded.history[-1].field == f"comment:{comment.id}:isInternal"

    async def test_unknown_incident(self, session):
        with pytest.raises(ResourceNotFoundException):
            await SQLAlchemyIncidentRepository(session).load("missing")


class TestOptimisticLocking:

    async def test_stale_write_conflicts(self, sql_engine, session_maker):
        incident = await sql_engine.create(VALID_INCIDENT, "reporter-1")

        async with session_maker() as first_session, session_maker() as second_session:
            first_repo = SQLAlchemyIncidentRepository(first_session)
            second_repo = SQLAlchemyIncidentRepository(second_session)
            first = await first_repo.load(incident.id)
            second = await second_repo.load(incident.id)

            first.status = IncidentStatus.CANCELLED
            saved = await first_repo.save(first)
            assert saved.version == first.version + 1

            second.title = "Somebody else's edit"
            with pytest.raises(ConflictException):
                await second_repo.save(second)

        async with session_maker() as fresh:
            stored = await SQLAlchemyIncidentRepository(fresh).load(incident.id)
        assert stored.status == IncidentStatus.CANCELLED
        assert stored.title == VALID_INCIDENT["title"]


class TestQuery:

    async def test_filters_sort_and_paging(self, sql_engine, session, clock):
        titles = ["Printer offline", "VPN down 100%", "Mail stuck_in outbox"]
        priorities = ["LOW", "CRITICAL", "MEDIUM"]
        for title, priority in zip(titles, priorities):
            await sql_engine.create(
                {**VALID_INCIDENT, "title": title, "priority": priority}, "reporter-1"
            )
            clock.advance(minutes=1)

        repo = SQLAlchemyIncidentRepository(session)

        by_priority = await repo.query(IncidentFilter(), IncidentSort.parse("-priority"), 1, 10)
        assert [i.priority.value for i in by_priority.items] == ["CRITICAL", "MEDIUM", "LOW"]

        page = await repo.query(IncidentFilter(), IncidentSort.parse("createdAt:asc"), 2, 2)
        assert page.total == 3
        assert [i.title for i in page.items] == ["Mail stuck_in outbox"]

        literal = await repo.query(IncidentFilter(search="100%"), IncidentSort(), 1, 10)
        assert [i.title for i in literal.items] == ["VPN down 100%"]

        underscore = await repo.query(IncidentFilter(search="k_i"), IncidentSort(), 1, 10)
        assert [i.title for i in underscore.items] == ["Mail stuck_in outbox"]

    async def test_deleted_hidden_by_default(self, sql_engine, session):
        incident = await sql_engine.create(VALID_INCIDENT, "reporter-1")
        await sql_engine.delete(incident.id, "lead-1")

        repo = SQLAlchemyIncidentRepository(session)
        assert (await repo.query(IncidentFilter(), IncidentSort(), 1, 10)).total == 0
        assert (await repo.query(IncidentFilter(include_deleted=True), IncidentSort(), 1, 10)).total == 1


class TestStatistics:

    async def test_aggregates_match_stored_rows(self, sql_engine, session, clock):
        low = await sql_engine.create({**VALID_INCIDENT, "priority": "LOW"}, "reporter-1")
        high = await sql_engine.create({**VALID_INCIDENT, "priority": "HIGH"}, "reporter-1")
        critical = await sql_engine.create({**VALID_INCIDENT, "priority": "CRITICAL"}, "reporter-1")
        gone = await sql_engine.create({**VALID_INCIDENT, "priority": "CRITICAL"}, "reporter-1")

        await sql_engine.escalate(critical.id, "Trading floor offline", None, "agent-1")
        await sql_engine.delete(gone.id, "lead-1")
        clock.advance(minutes=20)
        await sql_engine.transition(low.id, "IN_PROGRESS", "agent-1")
        await sql_engine.transition(low.id, "RESOLVED", "agent-1")
        clock.advance(minutes=580)
        await sql_engine.transition(high.id, "IN_PROGRESS", "agent-1")
        await sql_engine.transition(high.id, "RESOLVED", "agent-1")

        repo = SQLAlchemyIncidentRepository(session)
        stats = await repo.statistics(IncidentFilter())

        assert stats.total == 3
        assert stats.by_status[IncidentStatus.RESOLVED] == 2
        assert stats.by_status[IncidentStatus.NEW] == 1
        assert stats.by_status[IncidentStatus.CLOSED] == 0
        assert stats.by_priority[IncidentPriority.CRITICAL] == 1
        assert stats.by_priority[IncidentPriority.MEDIUM] == 0
        assert stats.sla_breached == 1
        assert stats.escalated == 1
        assert stats.avg_resolution_minutes == pytest.approx(310.0)

        with_deleted = await repo.statistics(IncidentFilter(include_deleted=True))
        assert with_deleted.by_priority[IncidentPriority.CRITICAL] == 2

    async def test_empty_table(self, session):
        stats = await SQLAlchemyIncidentRepository(session).statistics(IncidentFilter())

        assert stats.total == 0
        assert stats.sla_breached == 0
        assert stats.avg_resolution_minutes is None
