"""
Incident Lifecycle Module
=========================

Bounded Context for IT help-desk incidents and their service level agreements.

Responsibilities:
- Enforce the legal status graph of an incident
- Compute SLA targets per priority and detect response/resolution breaches
- Keep an append-only audit history of every change
- Store comments with internal/external visibility
- Fan lifecycle events out to real-time subscribers
- Filter, sort and page incidents for listings
- Monitor open incidents and alert on Slack when SLAs are at risk
"""

__version__ = "1.0.0"
