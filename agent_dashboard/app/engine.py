# agent_dashboard/app/engine.py
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Set

import httpx

from .alerts import AlertEngine, build_channels, build_rules
from .canonicalizer import Canonicalizer
from .client import DashboardClient
from .config import Settings
from .errors import ConversationError
from .models import ConversationResponse, Snapshot
from .peers import FileRegistryStore, PeerRegistry
from .poller import Poller
from .providers import DataProvider, build_providers
from .relay_sync import RelaySynchronizer

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Holds the last published snapshots. Replaced whole, never mutated."""

    def __init__(self, instance_id: str):
        empty = Snapshot(instance_id=instance_id, generated_at=datetime.now(timezone.utc))
        self._published = (empty, empty)

    def publish(self, local: Snapshot, merged: Snapshot) -> None:
        self._published = (local, merged)

    def current(self, scope: str = "merged") -> Snapshot:
        local, merged = self._published
        return local if scope == "local" else merged


class DashboardEngine:
    """Owns the poll cycle: providers -> canonicalizer -> peers -> publish -> consumers."""

    def __init__(self, settings: Settings, providers: Optional[List[DataProvider]] = None,
                 registry: Optional[PeerRegistry] = None, alerts: Optional[AlertEngine] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.instance_id = settings.instance_id
        self.started_at = time.monotonic()
        self.http_client = http_client or httpx.AsyncClient(follow_redirects=True)
        self._owns_client = http_client is None

        self.poller = Poller(
            providers if providers is not None else build_providers(settings),
            timeout_seconds=settings.provider_timeout_ms / 1000,
            failure_threshold=settings.provider_failure_threshold,
        )
        self.canonicalizer = Canonicalizer(settings.instance_id, activity_window=settings.activity_window,
                                           cost_per_million_tokens=settings.cost_per_million_tokens)
        self.store = SnapshotStore(settings.instance_id)

        if registry is None and settings.peers.enabled:
            registry = PeerRegistry(
                FileRegistryStore(settings.peers.registry_dir), settings.instance_id, settings.api_port,
                ttl_seconds=settings.peers.ttl_seconds,
                fetch_timeout_seconds=settings.peers.fetch_timeout_ms / 1000,
                manual_ports=settings.peers.ports,
            )
        self.registry = registry

        self.relay: Optional[RelaySynchronizer] = None
        if settings.relay.url:
            self.relay = RelaySynchronizer(
                settings.relay.url, settings.relay.token, settings.instance_id, settings.hostname,
                settings.workspace, settings.relay.api_url or f"http://{settings.hostname}:{settings.api_port}",
                self.http_client, timeout_seconds=settings.relay.timeout_seconds,
                backoff_base_seconds=settings.relay.backoff_base_seconds,
                backoff_max_seconds=settings.relay.backoff_max_seconds,
            )

        if alerts is None and settings.alerts.enabled:
            alerts = AlertEngine(build_rules(settings.alerts), build_channels(settings.alerts, self.http_client),
                                 history_limit=settings.alerts.history_limit)
        self.alerts = alerts

        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._dispatches: Set[asyncio.Task] = set()
        self.cycles = 0

    # --- Accessors ---

    def snapshot(self, scope: str = "merged") -> Snapshot:
        return self.store.current(scope)

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    # --- Cycle ---

    async def run_cycle(self) -> Snapshot:
        batch = await self.poller.run_cycle()
        local = self.canonicalizer.merge(batch)

        merged = local
        if self.registry is not None:
            self.registry.heartbeat()
            peer_snapshots = await self.registry.fetch_all(self.http_client)
            merged = self.canonicalizer.fold_peers(local, peer_snapshots)

        self.store.publish(local, merged)
        self.cycles += 1

        if self.relay is not None:
            self.relay.submit(local)
        if self.alerts is not None:
            for event, notification in self.alerts.evaluate(merged):
                task = asyncio.create_task(self.alerts.dispatch(event, notification))
                self._dispatches.add(task)
                task.add_done_callback(self._dispatches.discard)

        logger.debug(f"Cycle {self.cycles}: {len(local.agents)} local agents, {len(merged.agents)} total")
        return merged

    async def _loop(self) -> None:
        interval = self.settings.poll_interval_ms / 1000
        logger.info(f"Polling loop starting: every {interval}s with providers "
                    f"{[p.name for p in self.poller.providers]}")
        while not self._stopping.is_set():
            started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Error in poll cycle: {e}", exc_info=True)
            delay = max(0.0, interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Polling loop stopped.")

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        if self.registry is not None:
            self.registry.register()
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stops the timer; an in-flight cycle is allowed to finish."""
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)
        if self.relay is not None:
            await self.relay.close()
        if self.registry is not None:
            self.registry.deregister()
        if self._owns_client:
            await self.http_client.aclose()

    # --- Conversations ---

    async def load_conversation(self, agent_id: str) -> ConversationResponse:
        agent = self.snapshot().agent(agent_id)
        if agent is None:
            raise ConversationError(ConversationError.AGENT_NOT_FOUND, f"Unknown agent '{agent_id}'")

        for provider_name, ref in sorted(agent.source_refs.items()):
            provider = self.poller.provider(provider_name)
            if provider is None or not provider.supports_conversation:
                continue
            logger.info(f"Loading conversation for {agent_id} from {provider_name}")
            turns = await provider.load_conversation(ref)
            return ConversationResponse(agent_id=agent_id, turns=turns)

        if self.registry is not None:
            for origin in agent.origins:
                port = self.registry.port_of(origin)
                if origin == self.instance_id or port is None:
                    continue
                logger.info(f"Proxying conversation for {agent_id} to peer {origin}")
                client = DashboardClient(f"http://{self.registry.host}:{port}", http_client=self.http_client,
                                         timeout=self.settings.relay.timeout_seconds)
                return await client.fetch_conversation(agent_id)

        raise ConversationError(ConversationError.CONVERSATION_UNAVAILABLE,
                                f"No conversation history is available for '{agent_id}'")
