# agent_dashboard/app/alerts.py
"""Alert rules evaluated against consecutive snapshots.

Each (subject, event type) pair runs its own state machine::

    idle -> fired -> cooling-down -> idle

Detection already evaluates the transition against the snapshot it came
from, so pending is not a separate resting state. A qualifying transition
fires at once, dispatches to every routed channel and cools down for the
rule's throttle window. Identical events during the cooldown are recorded as
suppressed instead of dispatched.
"""
import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from .config import AlertSettings
from .errors import DeliveryError
from .models import AgentStatus, HealthState, Snapshot

logger = logging.getLogger(__name__)


class AlertEventType(str, Enum):
    AGENT_STARTED = "agent-started"
    AGENT_COMPLETED = "agent-completed"
    AGENT_ERROR = "agent-error"
    PROVIDER_DEGRADED = "provider-degraded"


class RuleState(str, Enum):
    IDLE = "idle"
    FIRED = "fired"
    COOLING_DOWN = "cooling-down"


class AlertRule(BaseModel):
    event: AlertEventType
    channels: List[str] = Field(default_factory=list)
    throttle_seconds: float = 300.0
    enabled: bool = True


class Notification(BaseModel):
    event: AlertEventType
    subject: str
    title: str
    body: str
    timestamp: datetime


class AlertEvent(BaseModel):
    subject: str
    event: AlertEventType
    generation: int
    at: datetime
    suppressed: bool = False
    title: str = ""
    delivered: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)


class _Tracker(BaseModel):
    state: RuleState = RuleState.IDLE
    generation: int = 0
    cooldown_until: Optional[datetime] = None


# --- Channels ---

class AlertChannel(ABC):
    name: str = "channel"

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Delivers one notification; raises DeliveryError on failure."""


class LogChannel(AlertChannel):
    name = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(f"[alert] {notification.title}: {notification.body}")


class HttpChannel(AlertChannel):
    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 10.0):
        self.http_client = http_client
        self.timeout = timeout

    async def _post(self, url: str, **kwargs) -> None:
        try:
            response = await self.http_client.post(url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(self.name, f"HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise DeliveryError(self.name, str(e) or e.__class__.__name__) from e


class WebhookChannel(HttpChannel):
    name = "webhook"

    def __init__(self, url: str, http_client: httpx.AsyncClient):
        super().__init__(http_client)
        self.url = url

    async def send(self, notification: Notification) -> None:
        await self._post(self.url, json={
            "event": notification.event.value,
            "subject": notification.subject,
            "title": notification.title,
            "body": notification.body,
            "timestamp": notification.timestamp.isoformat(),
            "source": "agent-dashboard",
        })


class SendGridEmailChannel(HttpChannel):
    name = "email"
    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str, sender: str, recipient: str, http_client: httpx.AsyncClient):
        super().__init__(http_client)
        self.api_key = api_key
        self.sender = sender
        self.recipient = recipient

    async def send(self, notification: Notification) -> None:
        await self._post(self.API_URL, headers={"Authorization": f"Bearer {self.api_key}"}, json={
            "personalizations": [{"to": [{"email": self.recipient}]}],
            "from": {"email": self.sender},
            "subject": notification.title,
            "content": [{"type": "text/plain", "value": notification.body}],
        })


class TwilioSmsChannel(HttpChannel):
    name = "sms"

    def __init__(self, account_sid: str, auth_token: str, sender: str, recipient: str,
                 http_client: httpx.AsyncClient):
        super().__init__(http_client)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.sender = sender
        self.recipient = recipient

    async def send(self, notification: Notification) -> None:
        url = f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        credentials = base64.b64encode(f"{self.account_sid}:{self.auth_token}".encode()).decode()
        body = f"{notification.title}\n{notification.body}"[:1500]
        await self._post(url, headers={"Authorization": f"Basic {credentials}"},
                         data={"To": self.recipient, "From": self.sender, "Body": body})


def build_channels(settings: AlertSettings, http_client: httpx.AsyncClient) -> Dict[str, AlertChannel]:
    channels: Dict[str, AlertChannel] = {"log": LogChannel()}
    if settings.webhook_url:
        channels["webhook"] = WebhookChannel(settings.webhook_url, http_client)
    if settings.sendgrid_api_key and settings.email_to:
        channels["email"] = SendGridEmailChannel(settings.sendgrid_api_key, settings.email_from,
                                                 settings.email_to, http_client)
    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from and settings.sms_to:
        channels["sms"] = TwilioSmsChannel(settings.twilio_account_sid, settings.twilio_auth_token,
                                           settings.twilio_from, settings.sms_to, http_client)
    return channels


def build_rules(settings: AlertSettings) -> List[AlertRule]:
    rules = []
    for rule in settings.rules:
        try:
            rules.append(AlertRule(**rule.model_dump()))
        except ValueError as e:
            logger.warning(f"Ignoring invalid alert rule {rule.event!r}: {e}")
    return rules


# --- Engine ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertEngine:
    def __init__(self, rules: List[AlertRule], channels: Dict[str, AlertChannel],
                 history_limit: int = 500, clock: Callable[[], datetime] = utcnow):
        self.rules: Dict[AlertEventType, AlertRule] = {r.event: r for r in rules if r.enabled and r.channels}
        self.channels = channels
        self.clock = clock
        self.history: Deque[AlertEvent] = deque(maxlen=history_limit)
        self._trackers: Dict[Tuple[str, AlertEventType], _Tracker] = {}
        self._agent_status: Optional[Dict[str, AgentStatus]] = None
        self._provider_state: Dict[str, HealthState] = {}

    def state_of(self, subject: str, event: AlertEventType) -> RuleState:
        tracker = self._trackers.get((subject, event))
        return tracker.state if tracker else RuleState.IDLE

    def detect(self, snapshot: Snapshot) -> List[Tuple[str, AlertEventType, str, str]]:
        """Diffs the snapshot against the previous one: (subject, event, title, body) tuples."""
        triggers = []
        previous = self._agent_status
        current = {a.id: a.status for a in snapshot.agents}

        if previous is not None:
            for agent in snapshot.agents:
                before = previous.get(agent.id)
                if before is None:
                    if agent.status in (AgentStatus.STARTING, AgentStatus.ACTIVE):
                        triggers.append((agent.id, AlertEventType.AGENT_STARTED,
                                         f"Agent started: {agent.name}",
                                         f"Model: {agent.model or 'unknown'} | Sources: {', '.join(agent.sources)}"))
                elif before != agent.status:
                    if agent.status is AgentStatus.COMPLETED:
                        triggers.append((agent.id, AlertEventType.AGENT_COMPLETED,
                                         f"Agent completed: {agent.name}",
                                         f"Tokens: {agent.tokens.total} | Cost: ${agent.estimated_cost:.2f}"))
                    elif agent.status is AgentStatus.ERROR:
                        triggers.append((agent.id, AlertEventType.AGENT_ERROR,
                                         f"Agent error: {agent.name}",
                                         f"Last status: {before.value}"))
        self._agent_status = current

        for health in snapshot.provider_health:
            before = self._provider_state.get(health.provider)
            degraded = health.state in (HealthState.DEGRADED, HealthState.ERROR, HealthState.DISABLED)
            was_degraded = before in (HealthState.DEGRADED, HealthState.ERROR, HealthState.DISABLED)
            if before is not None and degraded and not was_degraded:
                triggers.append((health.provider, AlertEventType.PROVIDER_DEGRADED,
                                 f"Data source degraded: {health.label or health.provider}",
                                 health.message))
            self._provider_state[health.provider] = health.state
        return triggers

    def _expire_cooldowns(self, now: datetime) -> None:
        for tracker in self._trackers.values():
            if tracker.state is RuleState.COOLING_DOWN and tracker.cooldown_until and now >= tracker.cooldown_until:
                tracker.state = RuleState.IDLE
                tracker.cooldown_until = None

    def evaluate(self, snapshot: Snapshot, now: Optional[datetime] = None) -> List[Tuple[AlertEvent, Notification]]:
        """Advances every state machine; returns fired events still to be dispatched."""
        now = now or self.clock()
        self._expire_cooldowns(now)
        to_dispatch = []

        for subject, event_type, title, body in self.detect(snapshot):
            rule = self.rules.get(event_type)
            if rule is None:
                continue
            tracker = self._trackers.setdefault((subject, event_type), _Tracker())

            if tracker.state is RuleState.COOLING_DOWN:
                self.history.append(AlertEvent(subject=subject, event=event_type, generation=tracker.generation,
                                               at=now, suppressed=True, title=title))
                logger.info(f"Suppressed {event_type.value} for {subject} (cooling down until {tracker.cooldown_until})")
                continue

            tracker.state = RuleState.FIRED
            tracker.generation += 1
            fired = AlertEvent(subject=subject, event=event_type, generation=tracker.generation, at=now, title=title)
            self.history.append(fired)
            to_dispatch.append((fired, Notification(event=event_type, subject=subject, title=title,
                                                    body=body, timestamp=now)))
            logger.info(f"Firing {event_type.value} for {subject}: {title}")

            if rule.throttle_seconds > 0:
                tracker.state = RuleState.COOLING_DOWN
                tracker.cooldown_until = now + timedelta(seconds=rule.throttle_seconds)
            else:
                tracker.state = RuleState.IDLE
        return to_dispatch

    async def dispatch(self, event: AlertEvent, notification: Notification) -> AlertEvent:
        """Sends to every routed channel; failures are captured on the event, never raised."""
        rule = self.rules[event.event]

        async def deliver(channel_name: str) -> None:
            channel = self.channels.get(channel_name)
            try:
                if channel is None:
                    raise DeliveryError(channel_name, "channel is not configured")
                await channel.send(notification)
                event.delivered.append(channel_name)
            except DeliveryError as e:
                event.failures[channel_name] = e.message
                logger.warning(f"Alert delivery failed for {event.event.value} via {channel_name}: {e.message}")
            except Exception as e:
                event.failures[channel_name] = str(e)
                logger.error(f"Alert channel {channel_name} raised unexpectedly: {e}", exc_info=True)

        await asyncio.gather(*(deliver(name) for name in rule.channels))
        return event

    async def process(self, snapshot: Snapshot, now: Optional[datetime] = None) -> List[AlertEvent]:
        events = []
        for event, notification in self.evaluate(snapshot, now):
            events.append(await self.dispatch(event, notification))
        return events
