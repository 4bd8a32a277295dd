# agent_dashboard/app/canonicalizer.py
"""Turns raw provider records into canonical agents.

Records describing the same session are found through a dedup key:

1. the provider's session id when it reports one;
2. otherwise ``(pid, workspace path)``; a pid-only record whose pid belongs to
   exactly one session-keyed record joins that session. Failing that, it joins
   the only unfinished pid-less session running in the same directory;
3. otherwise ``(provider, source file)``, which never merges across providers.

Across machines pid keys are prefixed with the host name (``host:pid-N``).

Records sharing a key are folded oldest to newest. Plain fields are
freshest-wins (empty values never erase older ones), token counts and cost
are max-wins, status ties go to the higher priority, and source/origin tags
accumulate. The same fold is used for peer and relay snapshots.
"""
import hashlib
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import MergeConflict
from .models import (
    Activity, Agent, AgentStatus, RawBatch, RawRecord, Snapshot, Stats, STATUS_PRIORITY,
    TokenUsage,
)

logger = logging.getLogger(__name__)

EMPTY = (None, "", [], {})
SCOPE_SEPARATOR = ":"


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:12]


def pid_key(pid: int, workspace_path: Optional[str]) -> str:
    if workspace_path:
        return f"pid-{pid}-{_short_hash(workspace_path)}"
    return f"pid-{pid}"


def record_key(record: RawRecord) -> str:
    """The dedup key of a single record, before pid-to-session resolution."""
    if record.session_id:
        return record.session_id
    if record.pid is not None:
        return pid_key(record.pid, record.workspace_path)
    # Known precision limit: unrelated sessions sharing a path over-merge,
    # and one session reported under two paths under-merges.
    return f"{record.provider}-{_short_hash(record.source_path or record.ref)}"


def _own_key(agent: Agent) -> str:
    if agent.session_id:
        return agent.session_id
    if agent.pid is not None:
        return pid_key(agent.pid, agent.workspace_path)
    return agent.id


def resolve_keys(partials: Sequence[Agent], scopes: Optional[Sequence[Optional[str]]] = None) -> List[str]:
    """Computes the final dedup key for each partial agent.

    ``scopes`` names the host each partial was observed on. A pid only
    identifies a process on its own host, so with scopes given, pid-derived
    keys are prefixed with the scope and a pid-only agent joins a session from
    the same scope only. Session ids and file keys stay global.
    """
    if scopes is None:
        scopes = [None] * len(partials)
    sessions_by_pid: Dict[Tuple[Optional[str], int], List[Tuple[str, Optional[str]]]] = defaultdict(list)
    # Session transcripts carry a cwd but no pid
    open_sessions_by_cwd: Dict[Tuple[Optional[str], str], set] = defaultdict(set)
    for agent, scope in zip(partials, scopes):
        if agent.session_id and agent.pid is not None:
            sessions_by_pid[(scope, agent.pid)].append((agent.session_id, agent.workspace_path))
        elif agent.session_id and agent.workspace_path and agent.status is not AgentStatus.COMPLETED:
            open_sessions_by_cwd[(scope, agent.workspace_path)].add(agent.session_id)

    keys = []
    for agent, scope in zip(partials, scopes):
        key = _own_key(agent)
        if not agent.session_id and agent.pid is not None:
            matches = {
                session for session, workspace in sessions_by_pid.get((scope, agent.pid), [])
                if not workspace or not agent.workspace_path or workspace == agent.workspace_path
            }
            if len(matches) == 1:
                keys.append(matches.pop())
                continue
            if len(matches) > 1:
                logger.warning(f"PID {agent.pid} matches sessions {sorted(matches)}; keeping {key} separate.")
            elif agent.workspace_path:
                same_cwd = open_sessions_by_cwd.get((scope, agent.workspace_path), set())
                if len(same_cwd) == 1:
                    keys.append(next(iter(same_cwd)))
                    continue
                if same_cwd:
                    logger.debug(f"PID {agent.pid} shares {agent.workspace_path} with {len(same_cwd)} open sessions")
            if scope:
                key = f"{scope}{SCOPE_SEPARATOR}{key}"
        keys.append(key)
    return keys


def _sort_key(agent: Agent):
    return (agent.last_activity_at, ",".join(agent.sources), ",".join(agent.origins), agent.id)


def _pick(older, newer):
    return older if newer in EMPTY else newer


def combine(key: str, older: Agent, newer: Agent) -> Agent:
    """Merges two observations of one agent; ``newer`` is at least as fresh as ``older``."""
    if older.model and newer.model and older.model != newer.model:
        logger.warning(str(MergeConflict(key, "model", newer.model, older.model)))
    if older.pid is not None and newer.pid is not None and older.pid != newer.pid:
        logger.warning(str(MergeConflict(key, "pid", newer.pid, older.pid)))

    if older.last_activity_at == newer.last_activity_at:
        status = max(older.status, newer.status, key=lambda s: STATUS_PRIORITY[s])
    else:
        status = newer.status

    return Agent(
        id=key,
        name=_pick(older.name, newer.name),
        sources=sorted(set(older.sources) | set(newer.sources)),
        origins=sorted(set(older.origins) | set(newer.origins)),
        source_refs={**older.source_refs, **newer.source_refs},
        status=status,
        model=_pick(older.model, newer.model),
        tokens=TokenUsage(
            input=max(older.tokens.input, newer.tokens.input),
            output=max(older.tokens.output, newer.tokens.output),
            cache_create=max(older.tokens.cache_create, newer.tokens.cache_create),
            cache_read=max(older.tokens.cache_read, newer.tokens.cache_read),
        ),
        estimated_cost=max(older.estimated_cost, newer.estimated_cost),
        active_tools=_pick(older.active_tools, newer.active_tools),
        files=_pick(older.files, newer.files),
        session_id=_pick(older.session_id, newer.session_id),
        pid=_pick(older.pid, newer.pid),
        workspace_path=_pick(older.workspace_path, newer.workspace_path),
        workspace=_pick(older.workspace, newer.workspace),
        has_conversation=older.has_conversation or newer.has_conversation,
        last_activity_at=max(older.last_activity_at, newer.last_activity_at),
        first_seen_at=min(older.first_seen_at, newer.first_seen_at),
    )


def fold(partials: Sequence[Agent], keys: Sequence[str]) -> Dict[str, Agent]:
    groups: Dict[str, List[Agent]] = defaultdict(list)
    for agent, key in zip(partials, keys):
        groups[key].append(agent)

    merged: Dict[str, Agent] = {}
    for key, members in groups.items():
        members = sorted(members, key=_sort_key)
        result = members[0].model_copy(update={"id": key})
        for member in members[1:]:
            result = combine(key, result, member)
        merged[key] = result
    return merged


def compute_stats(agents: Iterable[Agent]) -> Stats:
    agents = list(agents)
    by_status = {status.value: 0 for status in AgentStatus}
    for agent in agents:
        by_status[agent.status.value] += 1
    completed = [a for a in agents if a.status is AgentStatus.COMPLETED]
    durations = [(a.last_activity_at - a.first_seen_at).total_seconds() for a in completed]
    return Stats(
        total=len(agents),
        by_status=by_status,
        active=by_status[AgentStatus.ACTIVE.value],
        completed=len(completed),
        total_tokens=sum(a.tokens.total for a in agents),
        estimated_cost=round(sum(a.estimated_cost for a in agents), 6),
        avg_completed_duration_seconds=(sum(durations) / len(durations)) if durations else None,
    )


def trim_activities(activities: Iterable[Activity], window: int) -> List[Activity]:
    """Drops exact duplicates and keeps the newest ``window`` entries."""
    unique = {(a.timestamp, a.agent_id, a.category.value, a.description, a.provider or ""): a
              for a in activities}
    ordered = [unique[k] for k in sorted(unique, reverse=True)]
    return ordered[:window]


def _remap_activities(snapshot: Snapshot, remap: Mapping[str, str]) -> List[Activity]:
    return [a.model_copy(update={"agent_id": remap.get(a.agent_id, a.agent_id)})
            for a in snapshot.activities]


class Canonicalizer:
    def __init__(self, instance_id: str, activity_window: int = 50,
                 cost_per_million_tokens: float = 6.0):
        self.instance_id = instance_id
        self.activity_window = activity_window
        self.cost_per_million_tokens = cost_per_million_tokens

    def _from_record(self, record: RawRecord) -> Agent:
        key = record_key(record)
        return Agent(
            id=key,
            name=record.name or "",
            sources=[record.provider],
            origins=[self.instance_id],
            source_refs={record.provider: record.ref},
            status=record.status or AgentStatus.STARTING,
            model=record.model,
            tokens=record.tokens,
            estimated_cost=record.estimated_cost or 0.0,
            active_tools=list(record.active_tools),
            files=list(record.files),
            session_id=record.session_id,
            pid=record.pid,
            workspace_path=record.workspace_path,
            workspace=record.workspace,
            has_conversation=record.has_conversation,
            last_activity_at=record.observed_at,
            first_seen_at=min(record.started_at or record.observed_at, record.observed_at),
        )

    def _finalize(self, agent: Agent) -> Agent:
        update = {}
        if not agent.name:
            update["name"] = agent.id
        if agent.estimated_cost <= 0 and agent.tokens.total > 0:
            update["estimated_cost"] = round(agent.tokens.total / 1_000_000 * self.cost_per_million_tokens, 6)
        return agent.model_copy(update=update) if update else agent

    def merge(self, batch: RawBatch) -> Snapshot:
        """Builds the local snapshot. Same batch in, identical snapshot out."""
        partials = [self._from_record(r) for r in batch.records]
        keys = resolve_keys(partials)
        agents = fold(partials, keys)

        owner = {(r.provider, r.ref): key for r, key in zip(batch.records, keys)}
        activities = []
        for raw in batch.activities:
            agent_id = owner.get((raw.provider, raw.ref))
            if agent_id is None:
                logger.debug(f"Dropping activity from {raw.provider} for unknown ref {raw.ref}")
                continue
            activities.append(Activity(agent_id=agent_id, category=raw.category,
                                       description=raw.description, timestamp=raw.timestamp,
                                       provider=raw.provider))

        finished = [self._finalize(agents[k]) for k in sorted(agents)]
        return Snapshot(
            instance_id=self.instance_id,
            generated_at=batch.collected_at,
            agents=finished,
            activities=trim_activities(activities, self.activity_window),
            stats=compute_stats(finished),
            provider_health=[batch.health[name] for name in sorted(batch.health)],
        )

    def fold_peers(self, local: Snapshot, peer_snapshots: Mapping[str, Snapshot]) -> Snapshot:
        """Adds read-only agents contributed by peer instances to the local snapshot."""
        if not peer_snapshots:
            return local
        partials = list(local.agents)
        tagged: List[Tuple[str, str]] = [(self.instance_id, a.id) for a in local.agents]
        for peer_id in sorted(peer_snapshots):
            for agent in peer_snapshots[peer_id].agents:
                partials.append(agent.model_copy(update={
                    "origins": sorted(set(agent.origins) | {peer_id}),
                    # Refs point into the peer's own providers
                    "source_refs": {},
                }))
                tagged.append((peer_id, agent.id))

        keys = resolve_keys(partials)
        agents = fold(partials, keys)
        remaps = defaultdict(dict)
        for (origin, old_id), key in zip(tagged, keys):
            remaps[origin][old_id] = key

        activities = _remap_activities(local, remaps[self.instance_id])
        for peer_id in sorted(peer_snapshots):
            activities.extend(_remap_activities(peer_snapshots[peer_id], remaps[peer_id]))

        ordered = [agents[k] for k in sorted(agents)]
        return Snapshot(
            instance_id=self.instance_id,
            generated_at=local.generated_at,
            agents=ordered,
            activities=trim_activities(activities, self.activity_window),
            stats=compute_stats(ordered),
            provider_health=local.provider_health,
            peers=sorted(peer_snapshots),
        )


def merge_snapshots(snapshots: Sequence[Snapshot], instance_id: str, generated_at: datetime,
                    activity_window: int = 50, hosts: Optional[Mapping[str, str]] = None) -> Snapshot:
    """Unions snapshots from several instances with the same dedup semantics.

    ``hosts`` maps instance ids to host names. Pid-keyed agents are scoped to
    their host (the instance id when no host is known), so equal pids on two
    machines stay two agents.
    """
    hosts = hosts or {}
    partials: List[Agent] = []
    scopes: List[str] = []
    tagged: List[Tuple[str, str]] = []
    for snapshot in snapshots:
        for agent in snapshot.agents:
            partials.append(agent.model_copy(update={
                "origins": sorted(set(agent.origins) | {snapshot.instance_id}),
            }))
            scopes.append(hosts.get(snapshot.instance_id) or snapshot.instance_id)
            tagged.append((snapshot.instance_id, agent.id))

    keys = resolve_keys(partials, scopes)
    agents = fold(partials, keys)
    remaps = defaultdict(dict)
    for (origin, old_id), key in zip(tagged, keys):
        remaps[origin][old_id] = key

    activities: List[Activity] = []
    health = []
    for snapshot in snapshots:
        activities.extend(_remap_activities(snapshot, remaps[snapshot.instance_id]))
        health.extend(h.model_copy(update={"instance_id": snapshot.instance_id})
                      for h in snapshot.provider_health)

    ordered = [agents[k] for k in sorted(agents)]
    return Snapshot(
        instance_id=instance_id,
        generated_at=generated_at,
        agents=ordered,
        activities=trim_activities(activities, activity_window),
        stats=compute_stats(ordered),
        provider_health=health,
        peers=sorted({s.instance_id for s in snapshots}),
    )
