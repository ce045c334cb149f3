"""
Incident Interfaces Layer
=========================

Interface adapters for the incident module.

Contains:
- Controllers: FastAPI route handlers
- WebSockets: live lifecycle event stream

This is the outermost layer - handles HTTP requests/responses and
delegates to the incident engine.
"""

from incidents.interfaces.controllers import get_incident_engine, incident_router
from incidents.interfaces.websockets import IncidentConnectionManager, ws_router

__all__ = [
    "get_incident_engine",
    "incident_router",
    "IncidentConnectionManager",
    "ws_router",
]
