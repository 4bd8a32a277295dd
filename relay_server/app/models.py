# relay_server/app/models.py
from datetime import datetime
from typing import Optional

from agent_dashboard.app.models import DashboardModel, RelayPush, Snapshot


class RelayInstanceRecord(DashboardModel):
    instance_id: str
    hostname: str
    workspace: Optional[str] = None
    api_url: Optional[str] = None
    pushed_at: datetime
    ttl_seconds: float
    snapshot: Snapshot

    @classmethod
    def from_push(cls, push: RelayPush, pushed_at: datetime, ttl_seconds: float) -> "RelayInstanceRecord":
        return cls(instance_id=push.instance_id, hostname=push.hostname, workspace=push.workspace,
                   api_url=push.api_url, pushed_at=pushed_at, ttl_seconds=ttl_seconds,
                   snapshot=push.snapshot)


class InstanceSummary(DashboardModel):
    instance_id: str
    hostname: str
    workspace: Optional[str] = None
    pushed_at: datetime
    heartbeat_age_seconds: float
    agent_count: int


class PushAck(DashboardModel):
    ok: bool = True
    updated_at: datetime


class RelayHealthResponse(DashboardModel):
    status: str = "ok"
    version: str
    relay: bool = True
    instances: int
