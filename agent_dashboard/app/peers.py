# agent_dashboard/app/peers.py
import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .client import DashboardClient
from .models import PeerEntry, PeerInstance, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Registry storage ---

class RegistryStore(ABC):
    """Host-local table of instance id -> PeerEntry shared by every instance."""

    @abstractmethod
    def read(self) -> Dict[str, PeerEntry]:
        ...

    @abstractmethod
    def write(self, entry: PeerEntry) -> None:
        ...

    @abstractmethod
    def remove(self, instance_id: str) -> None:
        ...


class MemoryRegistryStore(RegistryStore):
    def __init__(self):
        self.entries: Dict[str, PeerEntry] = {}

    def read(self) -> Dict[str, PeerEntry]:
        return dict(self.entries)

    def write(self, entry: PeerEntry) -> None:
        self.entries[entry.instance_id] = entry

    def remove(self, instance_id: str) -> None:
        self.entries.pop(instance_id, None)


class FileRegistryStore(RegistryStore):
    """One JSON file per instance, so every instance only ever writes its own file."""

    def __init__(self, directory: str):
        self.directory = Path(directory).expanduser()

    def _path(self, instance_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in instance_id)
        return self.directory / f"{safe}.json"

    def read(self) -> Dict[str, PeerEntry]:
        entries: Dict[str, PeerEntry] = {}
        if not self.directory.is_dir():
            return entries
        for path in self.directory.glob("*.json"):
            try:
                entry = PeerEntry.model_validate_json(path.read_text(encoding='utf-8'))
            except (OSError, ValueError, ValidationError) as e:
                # Half-written or foreign file; the owner rewrites it next cycle
                logger.debug(f"Skipping unreadable registry entry {path}: {e}")
                continue
            entries[entry.instance_id] = entry
        return entries

    def write(self, entry: PeerEntry) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(entry.model_dump(mode="json", by_alias=True), f)
            os.replace(tmp_path, self._path(entry.instance_id))
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def remove(self, instance_id: str) -> None:
        try:
            self._path(instance_id).unlink()
        except FileNotFoundError:
            pass


# --- Registry ---

class PeerRegistry:
    """Tracks sibling instances on this host and fetches their local snapshots.

    Entries are pruned only on heartbeat staleness. A peer that fails to answer
    stays registered (it may be restarting) but contributes nothing that cycle.
    """

    def __init__(self, store: RegistryStore, instance_id: str, api_port: int,
                 ttl_seconds: float = DEFAULT_TTL_SECONDS, fetch_timeout_seconds: float = 1.5,
                 manual_ports: Optional[List[int]] = None, host: str = "127.0.0.1",
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.instance_id = instance_id
        self.api_port = api_port
        self.ttl = timedelta(seconds=ttl_seconds)
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.manual_ports = [p for p in (manual_ports or []) if p != api_port]
        self.host = host
        self.clock = clock
        self.peers: Dict[str, PeerInstance] = {}
        self._manual_ids = set()

    def register(self) -> None:
        self.heartbeat()
        logger.info(f"Registered instance {self.instance_id} on port {self.api_port}")

    def heartbeat(self) -> None:
        try:
            self.store.write(PeerEntry(instance_id=self.instance_id, api_port=self.api_port,
                                       heartbeat_at=self.clock(), pid=os.getpid()))
        except OSError as e:
            logger.warning(f"Could not write heartbeat for {self.instance_id}: {e}")

    def deregister(self) -> None:
        try:
            self.store.remove(self.instance_id)
            logger.info(f"Deregistered instance {self.instance_id}")
        except OSError as e:
            logger.warning(f"Could not deregister {self.instance_id}: {e}")

    def live_entries(self) -> Dict[str, PeerEntry]:
        """Reads the registry, prunes stale entries and returns the live ones except self."""
        now = self.clock()
        live: Dict[str, PeerEntry] = {}
        for instance_id, entry in self.store.read().items():
            if now - entry.heartbeat_at > self.ttl:
                logger.info(f"Pruning stale peer {instance_id} (last heartbeat {entry.heartbeat_at})")
                try:
                    self.store.remove(instance_id)
                except OSError as e:
                    logger.warning(f"Could not prune registry entry {instance_id}: {e}")
                continue
            if instance_id != self.instance_id:
                live[instance_id] = entry

        for instance_id, peer in list(self.peers.items()):
            if instance_id in live:
                continue
            if instance_id in self._manual_ids and peer.last_fetch_at and now - peer.last_fetch_at <= self.ttl:
                continue
            logger.info(f"Dropping peer {instance_id}")
            del self.peers[instance_id]
            self._manual_ids.discard(instance_id)
        return live

    async def fetch_all(self, http_client: httpx.AsyncClient) -> Dict[str, Snapshot]:
        """Fetches every live peer concurrently. Returns instance id -> local snapshot."""
        entries = self.live_entries()
        targets = {instance_id: entry.api_port for instance_id, entry in entries.items()}
        registered_ports = set(targets.values())
        for port in self.manual_ports:
            if port not in registered_ports:
                targets[f"port-{port}"] = port

        if not targets:
            return {}

        names = sorted(targets)
        results = await asyncio.gather(*(self._fetch(http_client, targets[n]) for n in names))

        now = self.clock()
        snapshots: Dict[str, Snapshot] = {}
        for name, snapshot in zip(names, results):
            entry = entries.get(name)
            if snapshot is None:
                if name in self.peers:
                    self.peers[name].reachable = False
                continue
            peer_id = snapshot.instance_id
            if peer_id == self.instance_id:
                continue
            if entry is None:
                # Manual port: its heartbeat is the last successful fetch
                self._manual_ids.add(peer_id)
            heartbeat = entry.heartbeat_at if entry else now
            peer = self.peers.get(peer_id)
            if peer is None:
                peer = PeerInstance(instance_id=peer_id, api_port=targets[name], last_heartbeat_at=heartbeat)
                logger.info(f"Discovered peer instance {peer_id} on port {targets[name]}")
            peer.last_heartbeat_at = heartbeat
            peer.last_fetch_at = now
            peer.agent_count = len(snapshot.agents)
            peer.reachable = True
            self.peers[peer_id] = peer
            snapshots[peer_id] = snapshot
        return snapshots

    async def _fetch(self, http_client: httpx.AsyncClient, port: int) -> Optional[Snapshot]:
        client = DashboardClient(f"http://{self.host}:{port}", http_client=http_client,
                                 timeout=self.fetch_timeout_seconds)
        return await client.fetch_state(scope="local")

    def port_of(self, instance_id: str) -> Optional[int]:
        peer = self.peers.get(instance_id)
        return peer.api_port if peer else None

    def list_peers(self) -> List[PeerInstance]:
        return [self.peers[k].model_copy() for k in sorted(self.peers)]
