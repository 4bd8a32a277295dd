# agent_dashboard/app/config.py
import os
import socket
import uuid
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv, find_dotenv
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AGENT_DASHBOARD_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".agent-dashboard" / "config.yaml"
DEFAULT_REGISTRY_DIR = Path.home() / ".agent-dashboard" / "instances"


class ProviderSettings(BaseModel):
    enabled: Dict[str, bool] = Field(default_factory=dict)
    claude_projects_dir: str = str(Path.home() / ".claude" / "projects")
    max_session_files: int = 15
    active_window_seconds: int = 120
    recent_window_seconds: int = 1800
    process_patterns: Dict[str, str] = Field(default_factory=lambda: {
        "Claude Code": r"\bclaude(\s|$)",
        "Aider": r"\baider(\s|$)",
        "Codex": r"\bcodex(\s|$)",
    })

    def is_enabled(self, name: str) -> bool:
        return self.enabled.get(name, True)


class PeerSettings(BaseModel):
    enabled: bool = True
    ports: List[int] = Field(default_factory=list)
    registry_dir: str = str(DEFAULT_REGISTRY_DIR)
    ttl_seconds: float = 30.0
    fetch_timeout_ms: int = 1500


class RelaySettings(BaseModel):
    url: Optional[str] = None
    token: Optional[str] = None
    api_url: Optional[str] = None
    timeout_seconds: float = 5.0
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0


class AlertRuleSettings(BaseModel):
    event: str
    channels: List[str] = Field(default_factory=list)
    throttle_seconds: float = 300.0
    enabled: bool = True


class AlertSettings(BaseModel):
    enabled: bool = False
    rules: List[AlertRuleSettings] = Field(default_factory=list)
    history_limit: int = 500
    webhook_url: Optional[str] = None
    sendgrid_api_key: Optional[str] = None
    email_from: str = "agent-dashboard@localhost"
    email_to: Optional[str] = None
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from: Optional[str] = None
    sms_to: Optional[str] = None


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class Settings(BaseModel):
    instance_id: str = Field(default_factory=_default_instance_id)
    workspace: str = Field(default_factory=lambda: Path.cwd().name)
    hostname: str = Field(default_factory=socket.gethostname)
    api_host: str = "0.0.0.0"
    api_port: int = 19850
    poll_interval_ms: int = 3000
    provider_timeout_ms: int = 2500
    provider_failure_threshold: int = 3
    activity_window: int = 50
    cost_per_million_tokens: float = 6.0
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    peers: PeerSettings = Field(default_factory=PeerSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_ports(value: str) -> List[int]:
    return [int(p.strip()) for p in value.split(',') if p.strip()]


# env var -> (dotted settings path, parser)
ENV_OVERRIDES = {
    "AGENT_DASHBOARD_INSTANCE_ID": ("instance_id", str),
    "AGENT_DASHBOARD_WORKSPACE": ("workspace", str),
    "AGENT_DASHBOARD_API_PORT": ("api_port", int),
    "AGENT_DASHBOARD_POLL_INTERVAL_MS": ("poll_interval_ms", int),
    "AGENT_DASHBOARD_PROVIDER_TIMEOUT_MS": ("provider_timeout_ms", int),
    "AGENT_DASHBOARD_PEERS_ENABLED": ("peers.enabled", _parse_bool),
    "AGENT_DASHBOARD_PEER_PORTS": ("peers.ports", _parse_ports),
    "AGENT_DASHBOARD_REGISTRY_DIR": ("peers.registry_dir", str),
    "AGENT_DASHBOARD_RELAY_URL": ("relay.url", str),
    "AGENT_DASHBOARD_RELAY_TOKEN": ("relay.token", str),
    "AGENT_DASHBOARD_ALERTS_ENABLED": ("alerts.enabled", _parse_bool),
    "AGENT_DASHBOARD_ALERT_WEBHOOK_URL": ("alerts.webhook_url", str),
}


def _set_dotted(data: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split('.')
    node = data
    for part in parts[:-1]:
        # An empty YAML section (`peers:`) loads as None
        if not isinstance(node.get(part), dict):
            node[part] = {}
        node = node[part]
    node[parts[-1]] = value


def _drop_invalid(data: Dict[str, Any], loc: Tuple[Any, ...]) -> bool:
    """Removes the deepest existing entry on ``loc``. Returns False when nothing was there."""
    parent, key = None, None
    node: Any = data
    for part in loc:
        if isinstance(node, dict) and part in node:
            pass
        elif isinstance(node, list) and isinstance(part, int) and 0 <= part < len(node):
            pass
        else:
            break
        parent, key = node, part
        node = node[part]
    if parent is None:
        return False
    del parent[key]
    return True


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not read config file {path}: {e}. Using defaults.")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {path} does not contain a mapping. Ignoring it.")
        return {}
    return data


def _build_settings(data: Dict[str, Any]) -> Settings:
    while True:
        try:
            return Settings(**data)
        except ValidationError as e:
            dropped = False
            for error in reversed(e.errors()):
                loc = ".".join(str(part) for part in error["loc"])
                logger.warning(f"Invalid config value for {loc}: {error['msg']}. Falling back to default.")
                dropped = _drop_invalid(data, tuple(error["loc"])) or dropped
            if not dropped:
                logger.warning("Config could not be applied. Using defaults.")
                return Settings()


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Builds Settings from an optional YAML file plus AGENT_DASHBOARD_* overrides.

    Bad values are logged and skipped so a typo never stops the dashboard.
    """
    if env is None:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path=dotenv_path)
            logger.info(f".env file found and loaded from: {dotenv_path}")
        env = os.environ

    config_path = Path(path) if path else None
    if config_path is None and env.get(CONFIG_ENV_VAR):
        config_path = Path(env[CONFIG_ENV_VAR])
    if config_path is None and DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if config_path is not None:
        if config_path.exists():
            data = _read_yaml(config_path)
            logger.info(f"Loaded dashboard config from {config_path}")
        else:
            logger.warning(f"Config file {config_path} not found. Using defaults.")

    for var, (dotted, parser) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            _set_dotted(data, dotted, parser(raw))
        except ValueError:
            logger.warning(f"Invalid value '{raw}' for {var}. Falling back to configured default.")

    return _build_settings(data)
