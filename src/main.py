"""
Incident Service - Main Application
===================================

IT helpdesk incident lifecycle service.

Modules:
- Incidents: lifecycle state machine, SLA clock, audit trail, comments
- Notifications: in-process event fan-out, WebSocket stream, Slack escalations
- SLA Monitoring: background evaluation of open incidents

Clean Architecture Layers:
- Interfaces: FastAPI controllers and WebSocket feed
- Application: Engine, dispatcher and DTOs
- Domain: Entities, value objects and domain services
- Infrastructure: Database, YAML config, Slack, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from config import settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import init_database, close_database, create_tables, get_session_context

# Incident Module
from incidents.application import NotificationDispatcher
from incidents.domain import SLAClock
from incidents.infrastructure import SQLAlchemyIncidentRepository
from incidents.infrastructure.external import (
    SLAConfigManager,
    SLAMonitor,
    SLAScheduler,
    SlackClient,
    SlackNotifier,
    repository_session_factory,
)
from incidents.interfaces import IncidentConnectionManager, incident_router, ws_router

# Logging and middleware
from shared.infrastructure.logging import setup_logging, get_logger
from shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and watch it for changes
    4. Create the notification dispatcher and WebSocket manager
    5. Bridge escalations to Slack
    6. Start the SLA monitor

    SHUTDOWN:
    1. Stop SLA scheduler
    2. Close WebSocket connections and the dispatcher
    3. Stop config watcher and close Slack client
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Incident Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use Alembic in production)
    # Note: If database is not available, the server will start but
    # database-dependent endpoints will fail
    logger.info("Creating database tables")
    database_ready = True
    try:
        await create_tables()
    except Exception as e:
        database_ready = False
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading SLA configuration")
    sla_config_manager = SLAConfigManager()
    sla_config_manager.load(settings.sla_config_path)
    sla_config_manager.start_watching()
    sla_clock = SLAClock(sla_config_manager)

    dispatcher = NotificationDispatcher(settings.notification_queue_size)
    connection_manager = IncidentConnectionManager(
        dispatcher,
        max_connections=settings.ws_max_connections,
        queue_size=settings.ws_queue_size,
    )

    slack_client = SlackClient()
    slack_notifier = SlackNotifier(dispatcher, slack_client)
    slack_notifier.start()

    sla_scheduler = None
    if settings.sla_evaluation_interval > 0 and database_ready:
        sla_monitor = SLAMonitor(
            repository_session_factory(get_session_context, SQLAlchemyIncidentRepository),
            sla_clock,
            slack_client,
        )
        sla_scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        await sla_scheduler.start(sla_monitor.evaluate)
    else:
        logger.info("SLA monitor disabled")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.sla_config_manager = sla_config_manager
    app.state.sla_clock = sla_clock
    app.state.dispatcher = dispatcher
    app.state.connection_manager = connection_manager
    app.state.slack_client = slack_client
    app.state.sla_scheduler = sla_scheduler
    app.state.database_ready = database_ready

    logger.info("Incident Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Incident Service")

    if sla_scheduler:
        await sla_scheduler.stop()

    slack_notifier.stop()
    await connection_manager.close_all()
    await dispatcher.close()

    sla_config_manager.stop_watching()
    await slack_client.close()

    await close_database()

    logger.info("Incident Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Incident Service API",
    description="""
    ## IT Helpdesk Incident Lifecycle Service

    Tracks incidents from submission to closure with SLA timers, a full
    audit trail and live notifications.

    ---

    ### Incidents

    **Endpoints:**
    - `POST /incidents` - Submit an incident
    - `GET /incidents` - Filter, sort and page incidents
    - `GET /incidents/{id}` - Incident with comments and SLA fields
    - `POST /incidents/{id}/status` - Move along the status graph
    - `POST /incidents/{id}/reopen` - Reopen a resolved or closed incident
    - `GET /incidents/{id}/history` - Audit trail
    - `GET /incidents/{id}/sla` - Current SLA state

    **Live events:** `WS /ws/incidents?topic=incident:<id>` or `incident:*`

    ---

    ### Configuration

    **Default SLA targets (minutes):**

    | Priority | Response | Resolution |
    |----------|----------|------------|
    | Critical | 30       | 240        |
    | High     | 60       | 480        |
    | Medium   | 240      | 1440       |
    | Low      | 480      | 2880       |

    Targets are read from `sla_config.yaml` and reloaded when the file changes.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(incident_router)
app.include_router(ws_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "sla_config": "loaded",
                        "sla_scheduler": "running",
                        "subscribers": 2,
                        "websocket_clients": 1
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database connectivity
    - SLA configuration status
    - Scheduler state
    - Notification subscribers
    """
    state = request.app.state
    scheduler = getattr(state, "sla_scheduler", None)
    dispatcher = getattr(state, "dispatcher", None)
    connection_manager = getattr(state, "connection_manager", None)

    checks = {
        "database": "connected" if getattr(state, "database_ready", False) else "unavailable",
        "sla_config": "loaded" if getattr(state, "sla_config_manager", None) else "not_loaded",
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "subscribers": dispatcher.subscriber_count() if dispatcher else 0,
        "websocket_clients": connection_manager.connection_count if connection_manager else 0,
    }

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Incident Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "incidents": {
                "prefix": "/incidents",
                "endpoints": [
                    "POST /incidents - Submit incident",
                    "GET /incidents - Query incidents",
                    "GET /incidents/{id} - Get incident",
                    "PATCH /incidents/{id} - Edit incident",
                    "POST /incidents/{id}/assign - Assign",
                    "POST /incidents/{id}/status - Change status",
                    "POST /incidents/{id}/reopen - Reopen",
                    "POST /incidents/{id}/comments - Comment",
                    "POST /incidents/{id}/escalate - Escalate",
                    "POST /incidents/{id}/satisfaction - Rate resolution",
                    "GET /incidents/{id}/history - Audit trail",
                    "GET /incidents/{id}/sla - SLA status",
                    "DELETE /incidents/{id} - Soft delete"
                ]
            },
            "events": {
                "websocket": "/ws/incidents?topic=incident:*"
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower()
    )
