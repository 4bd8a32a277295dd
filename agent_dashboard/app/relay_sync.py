# agent_dashboard/app/relay_sync.py
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .client import DashboardClient
from .errors import TransportError
from .models import RelayPush, RelayStatus, Snapshot

logger = logging.getLogger(__name__)


class RelaySynchronizer:
    """Pushes the local snapshot to the relay without ever blocking a cycle.

    ``submit`` only records the newest snapshot. A single background task
    pushes it, backing off exponentially on failure; snapshots submitted while
    it waits replace the pending one.
    """

    def __init__(self, relay_url: str, token: Optional[str], instance_id: str, hostname: str,
                 workspace: Optional[str], api_url: Optional[str], http_client: httpx.AsyncClient,
                 timeout_seconds: float = 5.0, backoff_base_seconds: float = 2.0,
                 backoff_max_seconds: float = 60.0):
        self.client = DashboardClient(relay_url, http_client=http_client, timeout=timeout_seconds, token=token)
        self.instance_id = instance_id
        self.hostname = hostname
        self.workspace = workspace
        self.api_url = api_url
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.status = RelayStatus(configured=True)
        self._pending: Optional[Snapshot] = None
        self._task: Optional[asyncio.Task] = None

    def backoff_seconds(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.backoff_base_seconds * (2 ** (failures - 1)), self.backoff_max_seconds)

    def submit(self, snapshot: Snapshot) -> None:
        self._pending = snapshot
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())

    def build_payload(self, snapshot: Snapshot) -> dict:
        push = RelayPush(instance_id=self.instance_id, hostname=self.hostname,
                         workspace=self.workspace, api_url=self.api_url, snapshot=snapshot)
        return push.model_dump(mode="json", by_alias=True)

    async def push_once(self, snapshot: Snapshot) -> bool:
        try:
            await self.client.push_state(self.build_payload(snapshot))
        except TransportError as e:
            self.status.consecutive_failures += 1
            self.status.last_error = e.message
            logger.warning(f"Relay push failed ({self.status.consecutive_failures} in a row): {e}")
            return False
        self.status.consecutive_failures = 0
        self.status.last_error = None
        self.status.last_push_at = datetime.now(timezone.utc)
        return True

    async def fetch_aggregate(self) -> Snapshot:
        """The relay's cross-machine view, for clients reaching this instance remotely."""
        snapshot = await self.client.fetch_state()
        if snapshot is None:
            raise TransportError(f"{self.client.base_url}/api/state", "relay aggregate unavailable")
        return snapshot

    async def _drain(self) -> None:
        while self._pending is not None:
            snapshot, self._pending = self._pending, None
            if await self.push_once(snapshot):
                continue
            if self._pending is None:
                # Nothing newer yet; retry this one after the backoff
                self._pending = snapshot
            await asyncio.sleep(self.backoff_seconds(self.status.consecutive_failures))

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
