# agent_dashboard/app/models.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict


class DashboardModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(DashboardModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class AgentStatus(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    IDLE = "idle"
    COMPLETED = "completed"
    ERROR = "error"


# Tie-break order when two records for one session carry the same timestamp
STATUS_PRIORITY: Dict[AgentStatus, int] = {
    AgentStatus.ERROR: 5,
    AgentStatus.ACTIVE: 4,
    AgentStatus.IDLE: 3,
    AgentStatus.STARTING: 2,
    AgentStatus.COMPLETED: 1,
}


class HealthState(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    DISABLED = "disabled"
    ERROR = "error"


class ActivityType(str, Enum):
    TOOL_USE = "tool_use"
    FILE_EDIT = "file_edit"
    COMMAND = "command"
    COMPLETE = "complete"
    ERROR = "error"
    START = "start"
    INFO = "info"


class TokenUsage(FrozenModel):
    input: int = 0
    output: int = 0
    cache_create: int = 0
    cache_read: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_create + self.cache_read


# --- Provider output ---

class RawRecord(DashboardModel):
    """One observation of an agent session by a single provider.

    ``ref`` is provider-local: it ties raw activities to the record and is
    handed back to the provider when a transcript is requested.
    """
    provider: str
    ref: str
    observed_at: datetime
    session_id: Optional[str] = None
    pid: Optional[int] = None
    workspace_path: Optional[str] = None
    source_path: Optional[str] = None
    name: Optional[str] = None
    status: Optional[AgentStatus] = None
    model: Optional[str] = None
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost: Optional[float] = None
    active_tools: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
    workspace: Optional[str] = None
    started_at: Optional[datetime] = None
    has_conversation: bool = False


class RawActivity(DashboardModel):
    provider: str
    ref: str
    category: ActivityType
    description: str
    timestamp: datetime


class ProviderHealth(DashboardModel):
    provider: str
    label: Optional[str] = None
    instance_id: Optional[str] = None
    state: HealthState = HealthState.OK
    message: str = ""
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    record_count: int = 0


class RawBatch(DashboardModel):
    collected_at: datetime
    records: List[RawRecord] = Field(default_factory=list)
    activities: List[RawActivity] = Field(default_factory=list)
    health: Dict[str, ProviderHealth] = Field(default_factory=dict)


# --- Canonical state ---

class Agent(FrozenModel):
    id: str
    name: str
    sources: List[str] = Field(default_factory=list)
    origins: List[str] = Field(default_factory=list)
    source_refs: Dict[str, str] = Field(default_factory=dict)
    status: AgentStatus = AgentStatus.STARTING
    model: Optional[str] = None
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost: float = 0.0
    active_tools: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
    session_id: Optional[str] = None
    pid: Optional[int] = None
    workspace_path: Optional[str] = None
    workspace: Optional[str] = None
    has_conversation: bool = False
    last_activity_at: datetime
    first_seen_at: datetime


class Activity(FrozenModel):
    agent_id: str
    category: ActivityType
    description: str
    timestamp: datetime
    provider: Optional[str] = None


class Stats(FrozenModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    active: int = 0
    completed: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    avg_completed_duration_seconds: Optional[float] = None


class Snapshot(FrozenModel):
    instance_id: str
    generated_at: datetime
    agents: List[Agent] = Field(default_factory=list)
    activities: List[Activity] = Field(default_factory=list)
    stats: Stats = Field(default_factory=Stats)
    provider_health: List[ProviderHealth] = Field(default_factory=list)
    peers: List[str] = Field(default_factory=list)

    def agent(self, agent_id: str) -> Optional[Agent]:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None


# --- Peers ---

class PeerEntry(DashboardModel):
    """What an instance writes into the shared host-local registry."""
    instance_id: str
    api_port: int
    heartbeat_at: datetime
    pid: Optional[int] = None


class PeerInstance(DashboardModel):
    instance_id: str
    api_port: int
    last_heartbeat_at: datetime
    last_fetch_at: Optional[datetime] = None
    agent_count: int = 0
    reachable: bool = False


# --- Conversations ---

class ToolCall(DashboardModel):
    name: str
    detail: str = ""
    result: Optional[str] = None
    is_error: bool = False


class ConversationTurn(DashboardModel):
    role: str
    content: str
    timestamp: Optional[datetime] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ConversationResponse(DashboardModel):
    agent_id: str
    turns: List[ConversationTurn] = Field(default_factory=list)


# --- API ---

class RelayStatus(DashboardModel):
    configured: bool = False
    last_push_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0


class HealthResponse(DashboardModel):
    status: str = "ok"
    version: str
    instance_id: str
    uptime: float
    relay: Optional[RelayStatus] = None


class ErrorResponse(DashboardModel):
    code: str
    detail: str


class RelayPush(DashboardModel):
    instance_id: str
    hostname: str
    workspace: Optional[str] = None
    api_url: Optional[str] = None
    snapshot: Snapshot
