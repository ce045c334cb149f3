"""Tests for Slack delivery, SLA config hot reload and the SLA monitor."""

from contextlib import asynccontextmanager

import httpx
import pytest

from config import EventType, IncidentPriority, IncidentStatus, SLAState
from core import ConfigurationException
from incidents.domain import LifecycleEvent
from incidents.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    SlackClient,
    SlackMessage,
    SlackNotifier,
    SLAConfigManager,
    SLAMonitor,
)

from conftest import T0, FakeClock, make_incident


VALID_YAML = """
sla_targets:
  critical: {response_target_min: 15, resolution_target_min: 120}
  HIGH: {response_target_min: 60, resolution_target_min: 480}
at_risk_threshold_percent: 10
"""


def _message(alert_type="breached"):
    return SlackMessage(
        incident_id="inc-1",
        title="Core switch down",
        priority="CRITICAL",
        status="IN_PROGRESS",
        alert_type=alert_type,
        created_at=T0.isoformat(),
        remaining_minutes=-5,
    )


def _slack(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SlackClient(
        webhook_url="https://hooks.slack.test/services/T000",
        channel="#incidents",
        http_client=http_client,
        backoff_base=0,
        **kwargs
    )


class RecordingSlack:
    """Stand-in Slack client that records alerts."""

    def __init__(self, succeed=True):
        self.sent = []
        self.succeed = succeed

    async def send_alert(self, data, max_retries=3):
        self.sent.append(data)
        return self.succeed


class TestCircuitBreaker:

    def test_opens_after_threshold_and_recovers(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=lambda: now[0])

        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

        now[0] = 30.0
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

    def test_failure_while_half_open_reopens(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=lambda: now[0])
        breaker.record_failure()
        now[0] = 11.0
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1)
        breaker.record_failure()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED


class TestSlackClient:

    async def test_sends_block_kit_message(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="ok")

        slack = _slack(handler)

        assert await slack.send_alert(_message()) is True
        await slack.close()

        assert len(requests) == 1
        body = httpx.Response(200, content=requests[0].content).json()
        assert body["channel"] == "#incidents"
        assert body["text"] == "SLA Breach Alert: Core switch down"
        assert "Remaining: -5 min" in body["blocks"][-1]["elements"][0]["text"]

    async def test_retries_then_succeeds(self):
        statuses = iter([500, 502, 200])
        slack = _slack(lambda request: httpx.Response(next(statuses)))

        assert await slack.send_alert(_message(), max_retries=3) is True
        assert slack.circuit_breaker.state == CircuitState.CLOSED

    async def test_transport_errors_open_the_circuit(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        slack = _slack(handler, circuit_breaker=CircuitBreaker(failure_threshold=1))

        assert await slack.send_alert(_message(), max_retries=2) is False
        assert len(calls) == 2
        assert slack.circuit_breaker.state == CircuitState.OPEN

        # Open circuit short-circuits without touching the network
        assert await slack.send_alert(_message()) is False
        assert len(calls) == 2

    async def test_unconfigured_webhook_is_skipped(self):
        slack = SlackClient(webhook_url="")
        assert await slack.send_alert(_message()) is False

    def test_escalation_message(self):
        event = LifecycleEvent(
            EventType.ESCALATED, "inc-9", "agent-1", T0,
            {"reason": "VIP affected", "escalatedTo": "desk-lead", "title": "CEO laptop", "priority": "HIGH"},
        )

        message = SlackMessage.for_escalation(event)
        body = SlackClient(webhook_url="", channel="#ops").build_message(message)

        assert message.escalated_to == "desk-lead"
        assert body["text"] == "Incident Escalated: CEO laptop"
        assert any("VIP affected" in block.get("text", {}).get("text", "") for block in body["blocks"])


class TestSlackNotifier:

    async def test_only_escalations_are_posted(self, dispatcher):
        slack = RecordingSlack()
        notifier = SlackNotifier(dispatcher, slack)
        notifier.start()

        dispatcher.publish(LifecycleEvent(EventType.UPDATED, "inc-1", "agent-1", T0, {"fields": ["title"]}))
        dispatcher.publish(LifecycleEvent(
            EventType.ESCALATED, "inc-1", "agent-1", T0,
            {"reason": "Outage", "title": "Core switch down", "priority": "CRITICAL"},
        ))
        await dispatcher.drain()

        assert [m.alert_type for m in slack.sent] == ["escalated"]

        notifier.stop()
        assert dispatcher.subscriber_count() == 0


class TestSLAConfigManager:

    def test_load_normalizes_priorities(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text(VALID_YAML)

        config = SLAConfigManager().load(path)

        assert config.get_targets(IncidentPriority.CRITICAL).resolution_target_min == 120
        assert config.get_targets(IncidentPriority.LOW) is None
        assert config.at_risk_threshold_percent == 10

    def test_missing_file_uses_defaults(self, tmp_path):
        config = SLAConfigManager().load(tmp_path / "absent.yaml")
        assert config.get_targets(IncidentPriority.CRITICAL).resolution_target_min == 240

    def test_invalid_file_fails_load(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("at_risk_threshold_percent: 250\n")

        with pytest.raises(ConfigurationException):
            SLAConfigManager().load(path)

    def test_reload_keeps_previous_config_on_error(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text(VALID_YAML)
        manager = SLAConfigManager()
        manager.load(path)

        path.write_text("sla_targets: [not, a, mapping")
        assert manager.reload() is False
        assert manager.config.at_risk_threshold_percent == 10

        path.write_text(VALID_YAML.replace("10", "40"))
        assert manager.reload() is True
        assert manager.config.at_risk_threshold_percent == 40

    def test_watching_requires_load(self):
        with pytest.raises(RuntimeError):
            SLAConfigManager().start_watching()


class TestSLAMonitor:

    @pytest.fixture
    def monitor_parts(self, repository, sla_clock):
        @asynccontextmanager
        async def factory():
            yield repository

        clock = FakeClock()
        slack = RecordingSlack()
        monitor = SLAMonitor(factory, sla_clock, slack, clock=clock, page_size=2)
        return monitor, slack, clock

    async def test_alerts_once_per_state(self, repository, monitor_parts):
        monitor, slack, clock = monitor_parts
        for index in range(3):
            await repository.save(make_incident(f"inc-{index}", IncidentStatus.IN_PROGRESS))
        await repository.save(make_incident("inc-done", IncidentStatus.RESOLVED, resolved_at=T0))

        clock.advance(minutes=10)
        counts = await monitor.evaluate()
        assert counts[SLAState.ON_TRACK.value] == 3
        assert counts["alerts_sent"] == 0

        clock.advance(minutes=180)
        counts = await monitor.evaluate()
        assert counts[SLAState.AT_RISK.value] == 3
        assert counts["alerts_sent"] == 3

        clock.advance(minutes=5)
        assert (await monitor.evaluate())["alerts_sent"] == 0

        clock.advance(minutes=60)
        counts = await monitor.evaluate()
        assert counts[SLAState.BREACHED.value] == 3
        assert counts["alerts_sent"] == 3
        assert [m.alert_type for m in slack.sent[-3:]] == ["breached"] * 3
        assert all(m.remaining_minutes < 0 for m in slack.sent[-3:])

    async def test_failed_delivery_is_retried(self, repository, sla_clock):
        @asynccontextmanager
        async def factory():
            yield repository

        slack = RecordingSlack(succeed=False)
        monitor = SLAMonitor(factory, sla_clock, slack, clock=FakeClock(T0))
        await repository.save(make_incident("inc-1", IncidentStatus.NEW))

        later = T0.replace(hour=14)
        await monitor.evaluate(later)
        await monitor.evaluate(later)

        assert len(slack.sent) == 2