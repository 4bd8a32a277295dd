# relay_server/app/store.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from agent_dashboard.app.canonicalizer import SCOPE_SEPARATOR, merge_snapshots
from agent_dashboard.app.models import RelayPush, Snapshot

from .models import InstanceSummary, RelayInstanceRecord

logger = logging.getLogger(__name__)

RELAY_INSTANCE_ID = "relay"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStore:
    """Last pushed snapshot per origin instance. The relay owns no agents itself."""

    def __init__(self, ttl_seconds: float = 60.0, activity_window: int = 50,
                 clock: Callable[[], datetime] = utcnow):
        self.ttl_seconds = ttl_seconds
        self.activity_window = activity_window
        self.clock = clock
        self._records: Dict[str, RelayInstanceRecord] = {}

    def put(self, push: RelayPush, now: Optional[datetime] = None) -> RelayInstanceRecord:
        record = RelayInstanceRecord.from_push(push, now or self.clock(), self.ttl_seconds)
        if push.instance_id not in self._records:
            logger.info(f"New instance {push.instance_id} ({push.hostname}) pushed state")
        self._records[push.instance_id] = record
        return record

    def live(self, now: Optional[datetime] = None) -> List[RelayInstanceRecord]:
        now = now or self.clock()
        for instance_id, record in list(self._records.items()):
            if now - record.pushed_at > timedelta(seconds=record.ttl_seconds):
                logger.info(f"Expiring instance {instance_id} (last push {record.pushed_at})")
                del self._records[instance_id]
        return [self._records[k] for k in sorted(self._records)]

    def aggregate(self, now: Optional[datetime] = None) -> Snapshot:
        now = now or self.clock()
        records = self.live(now)
        return merge_snapshots([r.snapshot for r in records], RELAY_INSTANCE_ID, now, self.activity_window,
                               hosts={r.instance_id: r.hostname for r in records})

    def summaries(self, now: Optional[datetime] = None) -> List[InstanceSummary]:
        now = now or self.clock()
        return [
            InstanceSummary(instance_id=r.instance_id, hostname=r.hostname, workspace=r.workspace,
                            pushed_at=r.pushed_at,
                            heartbeat_age_seconds=round((now - r.pushed_at).total_seconds(), 3),
                            agent_count=len(r.snapshot.agents))
            for r in self.live(now)
        ]

    def owner_of(self, agent_id: str,
                 now: Optional[datetime] = None) -> Optional[Tuple[RelayInstanceRecord, str]]:
        """The live instance holding the agent and the agent's id on that instance.

        Prefers an instance that has the transcript. Host-scoped ids
        (``host:pid-N``) are looked up on that host's instances.
        """
        records = self.live(now)
        candidates = []
        for record in records:
            agent = record.snapshot.agent(agent_id)
            if agent is not None:
                candidates.append((not agent.has_conversation, record.instance_id, record, agent_id))

        host, sep, local_id = agent_id.rpartition(SCOPE_SEPARATOR)
        if not candidates and sep:
            for record in records:
                agent = record.snapshot.agent(local_id)
                if host in (record.hostname, record.instance_id) and agent is not None:
                    candidates.append((not agent.has_conversation, record.instance_id, record, local_id))

        if not candidates:
            # The aggregate id may come from a merge; fall back to the owner of any folded record
            aggregate = self.aggregate(now).agent(agent_id)
            if aggregate is None:
                return None
            for origin in aggregate.origins:
                record = self._records.get(origin)
                if record is not None:
                    return record, agent_id
            return None
        best = min(candidates, key=lambda c: (c[0], c[1]))
        return best[2], best[3]
