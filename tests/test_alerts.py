"""
Tests for agent_dashboard.app.alerts
=====================================

Transition detection, the per-subject cooldown state machine and channel
delivery with failures captured per channel.
"""
import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from agent_dashboard.app.alerts import (
    AlertEngine, AlertEventType, AlertRule, LogChannel, Notification, RuleState, SendGridEmailChannel,
    TwilioSmsChannel, WebhookChannel,
    build_channels, build_rules,
)
from agent_dashboard.app.config import AlertSettings
from agent_dashboard.app.errors import DeliveryError
from agent_dashboard.app.models import AgentStatus, HealthState, ProviderHealth, Snapshot

from factories import T0, RecordingChannel, make_agent, make_snapshot


def _engine(*rules, channels=None) -> AlertEngine:
    channels = channels if channels is not None else {"test": RecordingChannel("test")}
    return AlertEngine(list(rules), channels)


def _rule(event, channels=("test",), throttle=300):
    return AlertRule(event=event, channels=list(channels), throttle_seconds=throttle)


def _with_status(status, at=T0):
    return make_snapshot("me", [make_agent("s1", status=status)], at=at)


def _with_provider(state):
    return Snapshot(instance_id="me", generated_at=T0,
                    provider_health=[ProviderHealth(provider="claude-sessions", state=state,
                                                    message="directory missing")])


# =========================================================================
# Detection
# =========================================================================

class TestDetection:
    def test_first_snapshot_only_primes(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_ERROR))
        assert engine.evaluate(_with_status(AgentStatus.ERROR), now=T0) == []

    def test_new_agent_fires_started(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_STARTED))
        engine.evaluate(make_snapshot("me", []), now=T0)
        fired = engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        assert [(e.subject, e.event) for e, _ in fired] == [("s1", AlertEventType.AGENT_STARTED)]

    def test_completion_fires_once(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_COMPLETED))
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        fired = engine.evaluate(_with_status(AgentStatus.COMPLETED), now=T0)
        assert len(fired) == 1
        assert fired[0][1].title.startswith("Agent completed")
        assert engine.evaluate(_with_status(AgentStatus.COMPLETED), now=T0) == []

    def test_unrouted_event_is_ignored(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_COMPLETED))
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        assert engine.evaluate(_with_status(AgentStatus.ERROR), now=T0) == []
        assert list(engine.history) == []

    def test_provider_degraded(self) -> None:
        engine = _engine(_rule(AlertEventType.PROVIDER_DEGRADED))
        engine.evaluate(_with_provider(HealthState.OK), now=T0)
        fired = engine.evaluate(_with_provider(HealthState.DEGRADED), now=T0)
        assert [(e.subject, e.event) for e, _ in fired] == [("claude-sessions", AlertEventType.PROVIDER_DEGRADED)]
        assert fired[0][1].body == "directory missing"
        assert engine.evaluate(_with_provider(HealthState.DISABLED), now=T0) == []


# =========================================================================
# State machine
# =========================================================================

class TestCooldown:
    def test_repeat_within_throttle_is_suppressed(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_ERROR, throttle=300))
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)

        first = engine.evaluate(_with_status(AgentStatus.ERROR), now=T0)
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0 + timedelta(seconds=60))
        second = engine.evaluate(_with_status(AgentStatus.ERROR), now=T0 + timedelta(seconds=120))

        assert len(first) == 1
        assert second == []
        history = list(engine.history)
        assert [e.suppressed for e in history] == [False, True]
        assert history[1].generation == history[0].generation == 1
        assert engine.state_of("s1", AlertEventType.AGENT_ERROR) is RuleState.COOLING_DOWN

    def test_refires_after_cooldown(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_ERROR, throttle=300))
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        engine.evaluate(_with_status(AgentStatus.ERROR), now=T0)
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0 + timedelta(seconds=200))
        assert engine.state_of("s1", AlertEventType.AGENT_ERROR) is RuleState.COOLING_DOWN

        fired = engine.evaluate(_with_status(AgentStatus.ERROR), now=T0 + timedelta(seconds=301))
        assert len(fired) == 1
        assert fired[0][0].generation == 2

    def test_transition_fires_in_the_same_evaluation(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_ERROR, throttle=300))
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        assert engine.state_of("s1", AlertEventType.AGENT_ERROR) is RuleState.IDLE

        fired = engine.evaluate(_with_status(AgentStatus.ERROR), now=T0)
        assert [e.generation for e, _ in fired] == [1]
        assert engine.state_of("s1", AlertEventType.AGENT_ERROR) is RuleState.COOLING_DOWN
        assert [s.value for s in RuleState] == ["idle", "fired", "cooling-down"]

    def test_zero_throttle_returns_to_idle(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_ERROR, throttle=0))
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        engine.evaluate(_with_status(AgentStatus.ERROR), now=T0)
        assert engine.state_of("s1", AlertEventType.AGENT_ERROR) is RuleState.IDLE

    def test_subjects_are_independent(self) -> None:
        engine = _engine(_rule(AlertEventType.AGENT_ERROR))
        engine.evaluate(make_snapshot("me", [make_agent("a"), make_agent("b")]), now=T0)
        fired = engine.evaluate(make_snapshot("me", [
            make_agent("a", status=AgentStatus.ERROR), make_agent("b", status=AgentStatus.ERROR),
        ]), now=T0)
        assert sorted(e.subject for e, _ in fired) == ["a", "b"]

    def test_disabled_rule_is_dropped(self) -> None:
        rule = AlertRule(event=AlertEventType.AGENT_ERROR, channels=["test"], enabled=False)
        assert _engine(rule).rules == {}


# =========================================================================
# Delivery
# =========================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_failure_is_captured_per_channel(self) -> None:
        good, bad = RecordingChannel("good"), RecordingChannel("bad", fail=True)
        engine = _engine(_rule(AlertEventType.AGENT_ERROR, channels=("good", "bad", "pager")),
                         channels={"good": good, "bad": bad})
        engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
        events = await engine.process(_with_status(AgentStatus.ERROR), now=T0)

        assert len(events) == 1
        event = events[0]
        assert event.delivered == ["good"]
        assert event.failures == {"bad": "mailbox full", "pager": "channel is not configured"}
        assert len(good.sent) == 1

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channels = {"webhook": WebhookChannel("https://hooks.test/alert", client)}
            engine = _engine(_rule(AlertEventType.AGENT_COMPLETED, channels=("webhook",)), channels=channels)
            engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
            events = await engine.process(_with_status(AgentStatus.COMPLETED), now=T0)

        assert events[0].delivered == ["webhook"]
        body = json.loads(seen[0].content)
        assert body["event"] == "agent-completed"
        assert body["subject"] == "s1"

    @pytest.mark.asyncio
    async def test_webhook_http_error_becomes_failure(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="nope"))
        async with httpx.AsyncClient(transport=transport) as client:
            channels = {"webhook": WebhookChannel("https://hooks.test/alert", client)}
            engine = _engine(_rule(AlertEventType.AGENT_ERROR, channels=("webhook",)), channels=channels)
            engine.evaluate(_with_status(AgentStatus.ACTIVE), now=T0)
            events = await engine.process(_with_status(AgentStatus.ERROR), now=T0)

        assert events[0].delivered == []
        assert events[0].failures["webhook"].startswith("HTTP 500")


def test_build_channels_only_configured_ones() -> None:
    settings = AlertSettings(webhook_url="https://hooks.test/x", sendgrid_api_key="key")
    channels = build_channels(settings, http_client=None)
    assert set(channels) == {"log", "webhook"}
    assert isinstance(channels["log"], LogChannel)


def test_build_rules_from_settings() -> None:
    settings = AlertSettings(rules=[{"event": "agent-error", "channels": ["log"], "throttle_seconds": 60}])
    rules = build_rules(settings)
    assert rules[0].event is AlertEventType.AGENT_ERROR
    assert rules[0].throttle_seconds == 60


def _notification() -> Notification:
    return Notification(event=AlertEventType.AGENT_ERROR, subject="s1", title="s1 hit an error",
                        body="Bash exited 1", timestamp=T0)


@pytest.mark.asyncio
async def test_sendgrid_posts_mail_with_bearer_key() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        channel = SendGridEmailChannel("sg-key", "dash@example.com", "dev@example.com", client)
        await channel.send(_notification())

    request = seen[0]
    assert str(request.url) == "https://api.sendgrid.com/v3/mail/send"
    assert request.headers["Authorization"] == "Bearer sg-key"
    assert json.loads(request.content) == {
        "personalizations": [{"to": [{"email": "dev@example.com"}]}],
        "from": {"email": "dash@example.com"},
        "subject": "s1 hit an error",
        "content": [{"type": "text/plain", "value": "Bash exited 1"}],
    }


@pytest.mark.asyncio
async def test_twilio_posts_form_with_basic_auth() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        channel = TwilioSmsChannel("AC123", "tw-token", "+15550001", "+15550002", client)
        await channel.send(_notification())

    request = seen[0]
    assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"AC123:tw-token").decode()
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert parse_qs(request.content.decode()) == {
        "To": ["+15550002"], "From": ["+15550001"], "Body": ["s1 hit an error\nBash exited 1"],
    }


@pytest.mark.parametrize("make_channel", [
    lambda client: SendGridEmailChannel("sg-key", "dash@example.com", "dev@example.com", client),
    lambda client: TwilioSmsChannel("AC123", "tw-token", "+15550001", "+15550002", client),
])
@pytest.mark.asyncio
async def test_provider_http_error_becomes_delivery_error(make_channel) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="bad credentials"))
    async with httpx.AsyncClient(transport=transport) as client:
        channel = make_channel(client)
        with pytest.raises(DeliveryError) as excinfo:
            await channel.send(_notification())
    assert excinfo.value.channel == channel.name
    assert excinfo.value.message == "HTTP 401: bad credentials"
