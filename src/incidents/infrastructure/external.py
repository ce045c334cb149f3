"""
Incident External Service Integrations
======================================

External services around the incident core:
- YAML SLA config file watcher (hot reload)
- Slack webhook notifications (escalations, SLA risk and breach)
- Dispatcher bridge posting escalations to Slack
- SLA monitor and APScheduler wrapper for background evaluation
"""

import asyncio
import threading
import time
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from config import OPEN_STATUSES, EventType, SLAState, SortField, settings
from core import ConfigurationException
from incidents.application.dto import IncidentFilter, IncidentSort
from incidents.application.notifications import (
    WILDCARD_TOPIC,
    NotificationDispatcher,
    Subscription,
)
from incidents.application.services import IIncidentRepository, utc_now
from incidents.domain import Incident, LifecycleEvent, SLAClock, SLAConfig, SLAConfigProvider
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== SLA configuration ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def _is_config(self, path: str) -> bool:
        return Path(path).resolve() == self.config_path.resolve()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if self._is_config(event.src_path):
            logger.info("SLA config file changed", extra={"path": event.src_path})
            self.config_manager.reload()

    def on_created(self, event):
        """Editors that save atomically replace the file instead of modifying it."""
        self.on_modified(event)


class SLAConfigManager(SLAConfigProvider):
    """
    Thread-safe SLA configuration manager with hot-reload support.

    Uses watchdog to monitor file changes and reload configuration
    without restarting the service. A broken file on reload keeps the
    previous configuration in place.
    """

    def __init__(self):
        self._config: Optional[SLAConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: the file exists but is not a valid SLA table
        """
        self._path = Path(path)
        try:
            config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            raise ConfigurationException(
                f"Invalid SLA configuration in {self._path}",
                {"path": str(self._path), "error": str(e)}
            ) from e
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> SLAConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("SLA config file not found, using defaults", extra={"path": str(path)})
            return SLAConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return SLAConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            logger.error(
                "Failed to reload SLA config, keeping previous configuration",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("SLA configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching configuration file for changes.

        Skips watching if:
        - File doesn't exist (production environments often use env vars)
        - Running in a containerized environment where inotify doesn't work
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "SLA config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(
                handler,
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching SLA config file", extra={"path": str(self._path)})
        except OSError as e:
            # File watching not supported (e.g., in Docker containers)
            logger.warning(
                "File watching not available, using static config",
                extra={"error": str(e)}
            )
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> SLAConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("SLA configuration not loaded")
            return self._config

    @property
    def config(self) -> SLAConfig:
        """Get current configuration."""
        return self.get_config()


# ========== Slack ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = self._clock() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


@dataclass
class SlackMessage:
    """Slack notification message."""
    incident_id: str
    title: str
    priority: str
    status: str
    alert_type: str
    created_at: str
    remaining_minutes: Optional[int] = None
    assignee_id: Optional[str] = None
    reason: Optional[str] = None
    escalated_to: Optional[str] = None

    @classmethod
    def for_sla(cls, incident: Incident, state: SLAState, remaining_minutes: int) -> "SlackMessage":
        return cls(
            incident_id=incident.id,
            title=incident.title,
            priority=incident.priority.value,
            status=incident.status.value,
            alert_type=state.value,
            created_at=incident.created_at.isoformat(),
            remaining_minutes=remaining_minutes,
            assignee_id=incident.assignee_id,
        )

    @classmethod
    def for_escalation(cls, event: LifecycleEvent) -> "SlackMessage":
        payload = event.payload
        return cls(
            incident_id=event.incident_id,
            title=str(payload.get("title", "")),
            priority=str(getattr(payload.get("priority"), "value", payload.get("priority", ""))),
            status="escalated",
            alert_type="escalated",
            created_at=event.timestamp.isoformat(),
            reason=payload.get("reason"),
            escalated_to=payload.get("escalatedTo"),
        )


_HEADERS = {
    "breached": ("🚨", "SLA Breach Alert", "🔴 BREACHED"),
    "at_risk": ("⚠️", "SLA Warning Alert", "🟡 AT RISK"),
    "escalated": ("📣", "Incident Escalated", "🟠 ESCALATED"),
}


class SlackClient:
    """
    Slack webhook client with circuit breaker and retry logic.

    Handles sending structured alerts to Slack with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_base: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout or settings.slack_timeout_seconds
        self._backoff_base = backoff_base
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )
        self._http_client = http_client

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def build_message(self, data: SlackMessage) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        emoji, header_text, status_text = _HEADERS.get(
            data.alert_type, ("ℹ️", "Incident Notification", data.alert_type.upper())
        )

        fields = [
            {"type": "mrkdwn", "text": f"*Incident:*\n{data.incident_id}"},
            {"type": "mrkdwn", "text": f"*Priority:*\n{data.priority.title()}"},
            {"type": "mrkdwn", "text": f"*Status:*\n{status_text}"},
            {"type": "mrkdwn", "text": f"*Assignee:*\n{data.assignee_id or 'Unassigned'}"},
        ]
        if data.escalated_to:
            fields.append({"type": "mrkdwn", "text": f"*Escalated to:*\n{data.escalated_to}"})

        context = f"Created: {data.created_at}"
        if data.remaining_minutes is not None:
            context += f" | Remaining: {data.remaining_minutes} min"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{emoji} {header_text}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{data.title}*"}
            },
            {
                "type": "section",
                "fields": fields
            },
        ]
        if data.reason:
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Reason:* {data.reason}"}
            })
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": context}]
        })

        return {
            "channel": self._channel,
            "text": f"{header_text}: {data.title}",
            "blocks": blocks
        }

    async def send_alert(
        self,
        data: SlackMessage,
        max_retries: int = 3
    ) -> bool:
        """
        Send alert to Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"incident_id": data.incident_id}
            )
            return False

        message = self.build_message(data)

        for attempt in range(max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={
                            "incident_id": data.incident_id,
                            "alert_type": data.alert_type
                        }
                    )
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1
                    }
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={
                        "error": str(e),
                        "attempt": attempt + 1,
                        "incident_id": data.incident_id
                    }
                )

            if attempt < max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class SlackNotifier:
    """Posts escalation events from the dispatcher to Slack."""

    def __init__(self, dispatcher: NotificationDispatcher, slack_client: SlackClient):
        self._dispatcher = dispatcher
        self._slack = slack_client
        self._subscription: Optional[Subscription] = None

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._dispatcher.subscribe(WILDCARD_TOPIC, self.handle)

    def stop(self) -> None:
        if self._subscription is not None:
            self._dispatcher.unsubscribe(self._subscription)
            self._subscription = None

    async def handle(self, event: LifecycleEvent) -> None:
        if event.type != EventType.ESCALATED:
            return
        await self._slack.send_alert(SlackMessage.for_escalation(event))


# ========== SLA monitoring ==========

RepositoryFactory = Callable[[], AbstractAsyncContextManager]


class SLAMonitor:
    """
    Periodic evaluation of open incidents against their resolution SLA.

    Sends one Slack alert per incident and state (at risk, breached).
    The monitor only reads incidents; it never changes them.
    """

    ALERT_STATES = (SLAState.AT_RISK, SLAState.BREACHED)

    def __init__(
        self,
        repository_factory: RepositoryFactory,
        sla_clock: SLAClock,
        slack_client: SlackClient,
        clock: Callable[[], datetime] = utc_now,
        page_size: int = 100
    ):
        self._repository_factory = repository_factory
        self._sla_clock = sla_clock
        self._slack = slack_client
        self._clock = clock
        self._page_size = page_size
        self._alerted: Dict[str, Set[SLAState]] = {}

    async def evaluate(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one evaluation pass.

        Returns:
            Counts of evaluated incidents per SLA state and alerts sent
        """
        now = now or self._clock()
        counts: Dict[str, int] = {state.value: 0 for state in SLAState}
        counts["alerts_sent"] = 0
        seen: Set[str] = set()

        filters = IncidentFilter(status=list(OPEN_STATUSES))
        sort = IncidentSort(field=SortField.CREATED_AT, descending=False)

        async with self._repository_factory() as repository:
            page = 1
            while True:
                result = await repository.query(filters, sort, page, self._page_size)
                for incident in result.items:
                    seen.add(incident.id)
                    state = self._sla_clock.resolution_state(incident, now)
                    counts[state.value] += 1
                    if await self._maybe_alert(incident, state, now):
                        counts["alerts_sent"] += 1
                if page * self._page_size >= result.total or not result.items:
                    break
                page += 1

        # Incidents that left the open statuses no longer need tracking
        for incident_id in list(self._alerted):
            if incident_id not in seen:
                del self._alerted[incident_id]

        logger.info("SLA evaluation completed", extra=counts)
        return counts

    async def _maybe_alert(self, incident: Incident, state: SLAState, now: datetime) -> bool:
        if state not in self.ALERT_STATES:
            return False
        alerted = self._alerted.setdefault(incident.id, set())
        if state in alerted:
            return False

        remaining = self._sla_clock.remaining_resolution_minutes(incident, now)
        sent = await self._slack.send_alert(SlackMessage.for_sla(incident, state, remaining))
        if sent:
            alerted.add(state)
        return sent


def repository_session_factory(
    session_context: Callable[[], AbstractAsyncContextManager],
    repository_cls: Callable[[Any], IIncidentRepository]
) -> RepositoryFactory:
    """Adapt a session context manager into a repository factory."""
    @asynccontextmanager
    async def factory():
        async with session_context() as session:
            yield repository_cls(session)

    return factory


class SLAScheduler:
    """
    Wrapper for APScheduler for background SLA evaluation.

    Manages the lifecycle of the scheduler and jobs.
    """

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="sla_evaluation",
            name="SLA Evaluation Job",
            misfire_grace_time=60,
            max_instances=1,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
