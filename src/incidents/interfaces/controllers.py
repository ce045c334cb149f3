"""
Incident Controllers (API Routes)
=================================

FastAPI routes for the incident lifecycle.

Controllers are thin - they delegate to the IncidentEngine. The acting
user is identified by the ``X-Actor-ID`` header; authentication happens
upstream.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.database import get_session
from incidents.application import (
    AssignRequest,
    AuditEntryResponse,
    CommentCreateRequest,
    CommentResponse,
    CommentVisibilityRequest,
    EscalateRequest,
    IncidentCreateDTO,
    IncidentEngine,
    IncidentListResponse,
    IncidentResponse,
    IncidentSort,
    IncidentStatisticsResponse,
    IncidentUpdateDTO,
    ReopenRequest,
    SatisfactionRequest,
    SLAStatusResponse,
    StatusChangeRequest,
)
from incidents.infrastructure import SQLAlchemyIncidentRepository
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/incidents", tags=["Incidents"])


# ========== Example payloads for Swagger ==========

INCIDENT_CREATE_EXAMPLE = {
    "title": "Printer on 3rd floor offline",
    "description": "The shared printer near the east stairs stopped responding this morning.",
    "priority": "HIGH",
    "category": "hardware",
    "equipment_id": "PRN-3F-EAST",
    "tags": ["printer", "floor-3"]
}

ERROR_RESPONSES = {
    400: {"description": "Invalid input"},
    404: {"description": "Incident not found"},
    409: {"description": "Illegal transition, invalid state or concurrent modification"},
}


# ========== Dependencies ==========

async def get_incident_engine(
    request: Request,
    session: AsyncSession = Depends(get_session)
) -> IncidentEngine:
    """Get incident engine bound to the request's database session."""
    state = request.app.state
    return IncidentEngine(
        SQLAlchemyIncidentRepository(session),
        dispatcher=getattr(state, "dispatcher", None),
        sla_clock=getattr(state, "sla_clock", None),
    )


async def get_actor_id(
    actor_id: str = Header(..., alias="X-Actor-ID", min_length=1, description="Acting user")
) -> str:
    return actor_id


# ========== Route Handlers ==========

@router.post(
    "",
    response_model=IncidentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit an incident",
    description="""
    Create an incident in status `NEW`. SLA response and resolution targets
    are derived from the priority.

    **Priorities**: `LOW`, `MEDIUM`, `HIGH`, `CRITICAL`

    **Categories**: `hardware`, `software`, `network`, `security`, `access`,
    `service_request`, `other`
    """,
    responses={
        201: {"description": "Incident created"},
        400: {"description": "Invalid input"},
    },
    openapi_extra={
        "requestBody": {"content": {"application/json": {"example": INCIDENT_CREATE_EXAMPLE}}}
    }
)
async def create_incident(
    payload: IncidentCreateDTO,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.create(payload, actor_id)
    return IncidentResponse.from_domain(incident)


@router.get(
    "",
    response_model=IncidentListResponse,
    summary="List incidents",
    description="""
    Filter, sort and page incidents. List filters accept comma separated
    values (`status=NEW,ASSIGNED`).

    **Sort fields**: `createdAt`, `updatedAt`, `priority`, `status`
    (unknown fields fall back to `createdAt` descending).
    """
)
async def list_incidents(
    incident_status: Optional[str] = Query(None, alias="status", description="Status filter"),
    priority: Optional[str] = Query(None, description="Priority filter"),
    category: Optional[str] = Query(None, description="Category filter"),
    assignee_id: Optional[str] = Query(None),
    reporter_id: Optional[str] = Query(None),
    equipment_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None, description="Created at or after"),
    date_to: Optional[datetime] = Query(None, description="Created at or before"),
    search: Optional[str] = Query(None, description="Case-insensitive text in title or description"),
    is_escalated: Optional[bool] = Query(None),
    include_deleted: bool = Query(False),
    sort: Optional[str] = Query(None, description="Sort field"),
    order: Optional[str] = Query(None, description="asc or desc"),
    page: int = Query(1, description="Page number (values below 1 are treated as 1)"),
    limit: Optional[int] = Query(None, description="Page size (clamped to the configured maximum)"),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    filters = {
        "status": incident_status,
        "priority": priority,
        "category": category,
        "assignee_id": assignee_id,
        "reporter_id": reporter_id,
        "equipment_id": equipment_id,
        "date_from": date_from,
        "date_to": date_to,
        "search": search,
        "is_escalated": is_escalated,
        "include_deleted": include_deleted,
    }
    result = await engine.query(filters, IncidentSort.parse(sort, order), page, limit)
    return IncidentListResponse.from_page(result)


@router.get(
    "/statistics",
    response_model=IncidentStatisticsResponse,
    summary="Incident statistics",
    description="""
    Counts by status and priority, SLA breaches, escalations and the average
    resolution time over the incidents matching the filter. Soft-deleted
    incidents are excluded unless `include_deleted` is set.
    """
)
async def incident_statistics(
    incident_status: Optional[str] = Query(None, alias="status", description="Status filter"),
    priority: Optional[str] = Query(None, description="Priority filter"),
    category: Optional[str] = Query(None, description="Category filter"),
    assignee_id: Optional[str] = Query(None),
    reporter_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None, description="Created at or after"),
    date_to: Optional[datetime] = Query(None, description="Created at or before"),
    include_deleted: bool = Query(False),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    stats = await engine.statistics({
        "status": incident_status,
        "priority": priority,
        "category": category,
        "assignee_id": assignee_id,
        "reporter_id": reporter_id,
        "date_from": date_from,
        "date_to": date_to,
        "include_deleted": include_deleted,
    })
    return IncidentStatisticsResponse.from_domain(stats)


@router.get(
    "/{incident_id}",
    response_model=IncidentResponse,
    summary="Get an incident",
    responses=ERROR_RESPONSES
)
async def get_incident(
    incident_id: str,
    reporter_view: bool = Query(False, description="Hide internal comments"),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.get(incident_id)
    return IncidentResponse.from_domain(incident, include_internal=not reporter_view)


@router.patch(
    "/{incident_id}",
    response_model=IncidentResponse,
    summary="Edit an incident",
    responses=ERROR_RESPONSES
)
async def update_incident(
    incident_id: str,
    payload: IncidentUpdateDTO,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.update(incident_id, payload, actor_id)
    return IncidentResponse.from_domain(incident)


@router.post(
    "/{incident_id}/assign",
    response_model=IncidentResponse,
    summary="Assign an incident",
    responses=ERROR_RESPONSES
)
async def assign_incident(
    incident_id: str,
    payload: AssignRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.assign(incident_id, payload.assignee_id, actor_id)
    return IncidentResponse.from_domain(incident)


@router.post(
    "/{incident_id}/status",
    response_model=IncidentResponse,
    summary="Change incident status",
    description="""
    Move the incident along the status graph:

    ```
    NEW          -> ASSIGNED, IN_PROGRESS, ON_HOLD, CANCELLED, CLOSED
    ASSIGNED     -> IN_PROGRESS, ON_HOLD, RESOLVED, CLOSED
    IN_PROGRESS  -> ON_HOLD, RESOLVED, CLOSED
    ON_HOLD      -> IN_PROGRESS, RESOLVED, CLOSED
    RESOLVED     -> CLOSED
    ```

    An optional `resolution_summary` is stored when moving to `RESOLVED`.
    A rejected transition returns 409 with the allowed next statuses.
    Use `/reopen` to bring a resolved or closed incident back.
    """,
    responses=ERROR_RESPONSES
)
async def change_status(
    incident_id: str,
    payload: StatusChangeRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.transition(
        incident_id, payload.status, actor_id,
        resolution_summary=payload.resolution_summary
    )
    return IncidentResponse.from_domain(incident)


@router.post(
    "/{incident_id}/reopen",
    response_model=IncidentResponse,
    summary="Reopen a resolved or closed incident",
    responses=ERROR_RESPONSES
)
async def reopen_incident(
    incident_id: str,
    payload: ReopenRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.reopen(incident_id, payload.reason, actor_id)
    return IncidentResponse.from_domain(incident)


@router.post(
    "/{incident_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Comment on an incident",
    responses=ERROR_RESPONSES
)
async def add_comment(
    incident_id: str,
    payload: CommentCreateRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    comment = await engine.comment(incident_id, actor_id, payload.content, payload.is_internal)
    return CommentResponse.from_domain(comment)


@router.get(
    "/{incident_id}/comments",
    response_model=List[CommentResponse],
    summary="List comments",
    responses=ERROR_RESPONSES
)
async def list_comments(
    incident_id: str,
    include_internal: bool = Query(True, description="False for reporter-facing views"),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    comments = await engine.comments(incident_id, include_internal)
    return [CommentResponse.from_domain(comment) for comment in comments]


@router.patch(
    "/{incident_id}/comments/{comment_id}",
    response_model=CommentResponse,
    summary="Change comment visibility",
    responses=ERROR_RESPONSES
)
async def set_comment_visibility(
    incident_id: str,
    comment_id: str,
    payload: CommentVisibilityRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    comment = await engine.set_comment_visibility(
        incident_id, comment_id, payload.is_internal, actor_id
    )
    return CommentResponse.from_domain(comment)


@router.post(
    "/{incident_id}/satisfaction",
    response_model=IncidentResponse,
    summary="Rate satisfaction with the resolution",
    responses=ERROR_RESPONSES
)
async def rate_satisfaction(
    incident_id: str,
    payload: SatisfactionRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.rate_satisfaction(incident_id, payload.rating, payload.comment, actor_id)
    return IncidentResponse.from_domain(incident)


@router.post(
    "/{incident_id}/escalate",
    response_model=IncidentResponse,
    summary="Escalate an open incident",
    responses=ERROR_RESPONSES
)
async def escalate_incident(
    incident_id: str,
    payload: EscalateRequest,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.escalate(incident_id, payload.reason, payload.escalated_to, actor_id)
    return IncidentResponse.from_domain(incident)


@router.get(
    "/{incident_id}/history",
    response_model=List[AuditEntryResponse],
    summary="Audit history",
    responses=ERROR_RESPONSES
)
async def get_history(
    incident_id: str,
    engine: IncidentEngine = Depends(get_incident_engine)
):
    history = await engine.history(incident_id)
    return [AuditEntryResponse.from_domain(entry) for entry in history]


@router.get(
    "/{incident_id}/sla",
    response_model=SLAStatusResponse,
    summary="Current SLA status",
    responses=ERROR_RESPONSES
)
async def get_sla_status(
    incident_id: str,
    engine: IncidentEngine = Depends(get_incident_engine)
):
    snapshot = await engine.sla_status(incident_id)
    return SLAStatusResponse.from_snapshot(snapshot)


@router.delete(
    "/{incident_id}",
    response_model=IncidentResponse,
    summary="Soft-delete an incident",
    responses=ERROR_RESPONSES
)
async def delete_incident(
    incident_id: str,
    actor_id: str = Depends(get_actor_id),
    engine: IncidentEngine = Depends(get_incident_engine)
):
    incident = await engine.delete(incident_id, actor_id)
    logger.info("Incident deleted via API", extra={"incident_id": incident.id})
    return IncidentResponse.from_domain(incident)


# Export router for inclusion in main app
incident_router = router
