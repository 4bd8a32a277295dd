# agent_dashboard/app/providers.py
import asyncio
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field

from .config import Settings
from .errors import ConversationError, SourceError
from .models import (
    ActivityType, AgentStatus, ConversationTurn, HealthState, RawActivity, RawRecord,
    TokenUsage, ToolCall,
)

logger = logging.getLogger(__name__)


class ProviderResult(BaseModel):
    records: List[RawRecord] = Field(default_factory=list)
    activities: List[RawActivity] = Field(default_factory=list)


class DataProvider(ABC):
    """A source of raw agent records.

    ``fetch`` may raise; the poller isolates failures. ``health`` reports the
    provider's own view of its last successful fetch (e.g. "directory missing").
    """
    name: str = "provider"
    label: str = "Provider"
    supports_conversation: bool = False

    def __init__(self):
        self._state = HealthState.OK
        self._message = "Initializing..."

    def health(self) -> Tuple[HealthState, str]:
        return self._state, self._message

    def _report(self, state: HealthState, message: str) -> None:
        self._state = state
        self._message = message

    @abstractmethod
    async def fetch(self) -> ProviderResult:
        ...

    async def load_conversation(self, ref: str) -> List[ConversationTurn]:
        raise ConversationError(
            ConversationError.CONVERSATION_UNAVAILABLE,
            f"{self.label} does not keep conversation history.",
        )


# --- Claude Code session transcripts ---

FILE_TOOLS = {"Edit", "MultiEdit", "Write", "NotebookEdit"}
COMMAND_TOOLS = {"Bash"}
FILE_INPUT_KEYS = ("file_path", "notebook_path", "path")


def _parse_ts(value) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _read_jsonl(path: Path) -> Tuple[List[dict], int]:
    """Returns (entries, malformed line count)."""
    entries: List[dict] = []
    malformed = 0
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                malformed += 1
                continue
            if isinstance(entry, dict):
                entries.append(entry)
            else:
                malformed += 1
    return entries, malformed


def _content_blocks(message: dict) -> List[dict]:
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def _tool_detail(tool_input) -> str:
    if not isinstance(tool_input, dict):
        return ""
    for key in FILE_INPUT_KEYS + ("command", "pattern", "description"):
        if tool_input.get(key):
            return str(tool_input[key])[:200]
    return ""


class ClaudeSessionProvider(DataProvider):
    name = "claude-sessions"
    label = "Claude Code Sessions"
    supports_conversation = True

    def __init__(self, projects_dir: str, max_files: int = 15,
                 active_window_seconds: int = 120, recent_window_seconds: int = 1800):
        super().__init__()
        self.projects_dir = Path(projects_dir).expanduser()
        self.max_files = max_files
        self.active_window = timedelta(seconds=active_window_seconds)
        self.recent_window = timedelta(seconds=recent_window_seconds)

    async def fetch(self) -> ProviderResult:
        return await asyncio.to_thread(self._scan, datetime.now(timezone.utc))

    def _scan(self, now: datetime) -> ProviderResult:
        if not self.projects_dir.is_dir():
            self._report(HealthState.DEGRADED, f"Session directory not found: {self.projects_dir}")
            return ProviderResult()

        files = []
        for path in self.projects_dir.glob("*/*.jsonl"):
            try:
                files.append((path.stat().st_mtime, path))
            except OSError:
                continue
        files.sort(reverse=True)

        result = ProviderResult()
        for mtime, path in files[:self.max_files]:
            try:
                entries, _ = _read_jsonl(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read session file {path}: {e}")
                continue
            if not entries:
                continue
            modified = datetime.fromtimestamp(mtime, tz=timezone.utc)
            record, activities = self._summarize(path, entries, modified, now)
            result.records.append(record)
            result.activities.extend(activities)

        self._report(HealthState.OK, f"Found {len(result.records)} session(s) in {len(files)} file(s)")
        return result

    def _summarize(self, path: Path, entries: List[dict], modified: datetime,
                   now: datetime) -> Tuple[RawRecord, List[RawActivity]]:
        ref = str(path)
        session_id = None
        cwd = None
        model = None
        title = None
        first_ts = None
        last_ts = None
        tokens = {"input": 0, "output": 0, "cache_create": 0, "cache_read": 0}
        open_tools: Dict[str, str] = {}
        files: List[str] = []
        activities: List[RawActivity] = []
        saw_error = False

        for entry in entries:
            session_id = session_id or entry.get("sessionId")
            cwd = entry.get("cwd") or cwd
            ts = _parse_ts(entry.get("timestamp"))
            if ts:
                first_ts = first_ts or ts
                last_ts = ts
            message = entry.get("message")
            if not isinstance(message, dict):
                continue

            if entry.get("type") == "assistant":
                model = message.get("model") or model
                usage = message.get("usage") or {}
                tokens["input"] += int(usage.get("input_tokens") or 0)
                tokens["output"] += int(usage.get("output_tokens") or 0)
                tokens["cache_create"] += int(usage.get("cache_creation_input_tokens") or 0)
                tokens["cache_read"] += int(usage.get("cache_read_input_tokens") or 0)
                for block in _content_blocks(message):
                    if block.get("type") != "tool_use":
                        continue
                    tool = block.get("name") or "tool"
                    open_tools[block.get("id") or tool] = tool
                    tool_input = block.get("input")
                    if isinstance(tool_input, dict):
                        for key in FILE_INPUT_KEYS:
                            touched = tool_input.get(key)
                            if touched and touched not in files:
                                files.append(str(touched))
                    if tool in FILE_TOOLS:
                        category = ActivityType.FILE_EDIT
                    elif tool in COMMAND_TOOLS:
                        category = ActivityType.COMMAND
                    else:
                        category = ActivityType.TOOL_USE
                    activities.append(RawActivity(
                        provider=self.name, ref=ref, category=category,
                        description=f"{tool} {_tool_detail(tool_input)}".strip(),
                        timestamp=ts or modified,
                    ))
            elif entry.get("type") == "user":
                for block in _content_blocks(message):
                    if block.get("type") == "tool_result":
                        open_tools.pop(block.get("tool_use_id"), None)
                        saw_error = bool(block.get("is_error")) or saw_error
                    elif block.get("type") == "text" and title is None:
                        text = str(block.get("text") or "").strip()
                        if text:
                            title = text.splitlines()[0][:60]

        age = now - modified
        if age <= self.active_window:
            status = AgentStatus.ACTIVE
        elif age <= self.recent_window:
            status = AgentStatus.IDLE
        else:
            status = AgentStatus.COMPLETED
            open_tools = {}

        session_id = session_id or path.stem
        record = RawRecord(
            provider=self.name,
            ref=ref,
            observed_at=last_ts or modified,
            session_id=session_id,
            workspace_path=cwd,
            source_path=ref,
            name=title or f"Claude session {session_id[:8]}",
            status=status,
            model=model,
            tokens=TokenUsage(**tokens),
            active_tools=sorted(set(open_tools.values())),
            files=files[-20:],
            workspace=Path(cwd).name if cwd else path.parent.name,
            started_at=first_ts,
            has_conversation=True,
        )
        if saw_error and status is AgentStatus.COMPLETED:
            activities.append(RawActivity(
                provider=self.name, ref=ref, category=ActivityType.ERROR,
                description="Session ended after a failed tool call", timestamp=record.observed_at,
            ))
        return record, activities[-10:]

    async def load_conversation(self, ref: str) -> List[ConversationTurn]:
        return await asyncio.to_thread(self._load_turns, Path(ref))

    def _load_turns(self, path: Path) -> List[ConversationTurn]:
        try:
            entries, malformed = _read_jsonl(path)
        except (OSError, UnicodeDecodeError) as e:
            raise ConversationError(ConversationError.STORE_UNREACHABLE,
                                    f"Could not read transcript {path}: {e}") from e
        if not entries and malformed:
            raise ConversationError(ConversationError.MALFORMED_TRANSCRIPT,
                                    f"Transcript {path} has no readable entries")

        turns: List[ConversationTurn] = []
        calls_by_id: Dict[str, ToolCall] = {}
        for entry in entries:
            message = entry.get("message")
            role = entry.get("type")
            if role not in ("user", "assistant") or not isinstance(message, dict):
                continue
            texts = []
            tool_calls = []
            for block in _content_blocks(message):
                kind = block.get("type")
                if kind == "text":
                    texts.append(str(block.get("text") or ""))
                elif kind == "tool_use":
                    call = ToolCall(name=block.get("name") or "tool", detail=_tool_detail(block.get("input")))
                    calls_by_id[block.get("id") or call.name] = call
                    tool_calls.append(call)
                elif kind == "tool_result":
                    call = calls_by_id.get(block.get("tool_use_id"))
                    if call is not None:
                        content = block.get("content")
                        call.result = content if isinstance(content, str) else json.dumps(content)[:2000]
                        call.is_error = bool(block.get("is_error"))
            if not texts and not tool_calls:
                continue
            turns.append(ConversationTurn(
                role=role,
                content="\n".join(t for t in texts if t),
                timestamp=_parse_ts(entry.get("timestamp")),
                tool_calls=tool_calls,
            ))
        return turns


# --- Process table ---

EXCLUDED_PROCESS_MARKERS = ("Electron", ".app/", "Code Helper", "desktop")


class ProcessTableProvider(DataProvider):
    name = "process-table"
    label = "Agent Processes"

    def __init__(self, patterns: Dict[str, str], timeout_seconds: float = 5.0):
        super().__init__()
        self.patterns = {label: re.compile(p, re.IGNORECASE) for label, p in patterns.items()}
        self.timeout_seconds = timeout_seconds

    async def fetch(self) -> ProviderResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                "ps", "-eo", "pid=,args=",
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SourceError(self.name, "ps command not found") from e
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise SourceError(self.name, f"ps did not answer within {self.timeout_seconds}s") from e
        return self._parse(stdout.decode(errors="replace"), datetime.now(timezone.utc))

    def _parse(self, output: str, now: datetime) -> ProviderResult:
        result = ProviderResult()
        own_pid = os.getpid()
        seen = set()
        for line in output.splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) != 2 or not parts[0].isdigit():
                continue
            pid, args = int(parts[0]), parts[1]
            if pid == own_pid or pid in seen:
                continue
            if any(marker in args for marker in EXCLUDED_PROCESS_MARKERS):
                continue
            for label, pattern in self.patterns.items():
                if pattern.search(args):
                    seen.add(pid)
                    cwd = self._process_cwd(pid)
                    result.records.append(RawRecord(
                        provider=self.name,
                        ref=f"pid-{pid}",
                        observed_at=now,
                        pid=pid,
                        workspace_path=cwd,
                        name=f"{label} (PID {pid})",
                        status=AgentStatus.ACTIVE,
                        workspace=Path(cwd).name if cwd else None,
                    ))
                    break
        self._report(HealthState.OK, f"Found {len(result.records)} agent process(es)"
                     if result.records else "No agent processes detected.")
        return result

    @staticmethod
    def _process_cwd(pid: int) -> Optional[str]:
        try:
            return os.readlink(f"/proc/{pid}/cwd")
        except OSError:
            return None


PROVIDER_TYPES: Dict[str, Type[DataProvider]] = {
    ClaudeSessionProvider.name: ClaudeSessionProvider,
    ProcessTableProvider.name: ProcessTableProvider,
}


def build_providers(settings: Settings) -> List[DataProvider]:
    """Instantiates every provider whose enable flag is on."""
    options = settings.providers
    providers: List[DataProvider] = []
    if options.is_enabled(ClaudeSessionProvider.name):
        providers.append(ClaudeSessionProvider(
            options.claude_projects_dir,
            max_files=options.max_session_files,
            active_window_seconds=options.active_window_seconds,
            recent_window_seconds=options.recent_window_seconds,
        ))
    if options.is_enabled(ProcessTableProvider.name):
        providers.append(ProcessTableProvider(options.process_patterns))
    unknown = set(options.enabled) - set(PROVIDER_TYPES)
    if unknown:
        logger.warning(f"Ignoring enable flags for unknown providers: {sorted(unknown)}")
    return providers
