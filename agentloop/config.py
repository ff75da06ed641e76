"""Engine configuration.

Every field defaults from the environment, so ``EngineConfig()`` is usable
as-is. ``load_config`` adds a ``.env`` file and an optional YAML/JSON file
on top of that.

Environment Variables:
    AGENTLOOP_MODEL: Main model (default: gemini-2.5-pro)
    AGENTLOOP_FALLBACK_MODEL: Model offered on persistent rate limits (default: gemini-2.5-flash)
    AGENTLOOP_EMBEDDING_MODEL: Embedding model (default: gemini-embedding-001)
    AGENTLOOP_AUTH_TYPE: oauth-personal | gemini-api-key | vertex-ai
    AGENTLOOP_APPROVAL_MODE: default | autoEdit | yolo
    AGENTLOOP_MAX_TURNS: Turn budget per user message (default: 100, capped at 100)
    AGENTLOOP_COMPRESSION_THRESHOLD: Fraction of the context window that triggers compression (default: 0.7)
    AGENTLOOP_TOOL_DISCOVERY_COMMAND: Command printing tool declarations as JSON
    AGENTLOOP_TOOL_CALL_COMMAND: Command invoked as ``<cmd> <tool name>`` for discovered tools
    AGENTLOOP_MCP_SERVER_COMMAND: Single MCP server command line, registered as server "mcp"
    AGENTLOOP_EDITOR: Diff editor for modify-with-editor (vscode, vim, neovim, ...)
    AGENTLOOP_TELEMETRY: Enable telemetry when '1', 'true', or 'yes'
    AGENTLOOP_TELEMETRY_EXPORTER: otlp | console | none (default: otlp)
    AGENTLOOP_TELEMETRY_LOG_PROMPTS: Include prompt text in telemetry records
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .plugins.model_provider.base import AuthType
from .retry_utils import RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_FLASH_MODEL = "gemini-2.5-flash"
DEFAULT_EMBEDDING_MODEL = "gemini-embedding-001"

MAX_TURNS = 100
"""Hard upper bound on turns per user message, whatever the configuration says."""

# (current_model, fallback_model) -> True to accept the switch
FallbackHandler = Callable[[str, str], bool]


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


class ApprovalMode(str, Enum):
    """How tool confirmations are handled.

    ``YOLO`` approves every call without asking. ``AUTO_EDIT`` is consulted
    by edit-style tools themselves to skip their diff confirmation.
    """
    DEFAULT = "default"
    AUTO_EDIT = "autoEdit"
    YOLO = "yolo"


@dataclass
class MCPServerConfig:
    """Connection settings for one MCP server.

    Either ``command`` (stdio transport) or ``url`` (SSE transport) must be set.

    Attributes:
        command: Executable that speaks MCP over stdio.
        args: Arguments for ``command``.
        env: Extra environment variables for the server process.
        cwd: Working directory for the server process.
        url: SSE endpoint of a remote server.
        timeout: Per-call timeout in seconds.
        trust: Skip confirmation for every tool of this server.
    """
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    url: Optional[str] = None
    timeout: float = 600.0
    trust: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MCPServerConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TelemetrySettings:
    """Telemetry settings, passed to the telemetry plugin as a dict."""
    enabled: bool = field(default_factory=lambda: _env_flag("AGENTLOOP_TELEMETRY"))
    exporter: str = field(default_factory=lambda: os.environ.get("AGENTLOOP_TELEMETRY_EXPORTER", "otlp"))
    endpoint: Optional[str] = field(default_factory=lambda: os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT"))
    log_prompts: bool = field(default_factory=lambda: _env_flag("AGENTLOOP_TELEMETRY_LOG_PROMPTS"))
    queue_size: int = 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "exporter": self.exporter,
            "endpoint": self.endpoint,
            "redact_content": not self.log_prompts,
        }


@dataclass
class EngineConfig:
    """Settings shared by the orchestrator, chat session, scheduler and registry."""
    model: str = field(default_factory=lambda: os.environ.get("AGENTLOOP_MODEL", DEFAULT_MODEL))
    fallback_model: str = field(default_factory=lambda: os.environ.get("AGENTLOOP_FALLBACK_MODEL", DEFAULT_FLASH_MODEL))
    embedding_model: str = field(default_factory=lambda: os.environ.get("AGENTLOOP_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL))
    auth_type: AuthType = field(default_factory=lambda: AuthType(os.environ.get("AGENTLOOP_AUTH_TYPE", AuthType.USE_GEMINI.value)))
    approval_mode: ApprovalMode = field(default_factory=lambda: ApprovalMode(os.environ.get("AGENTLOOP_APPROVAL_MODE", ApprovalMode.DEFAULT.value)))
    max_session_turns: int = field(default_factory=lambda: int(os.environ.get("AGENTLOOP_MAX_TURNS", str(MAX_TURNS))))
    compression_threshold: float = field(default_factory=lambda: float(os.environ.get("AGENTLOOP_COMPRESSION_THRESHOLD", "0.7")))
    tool_discovery_command: Optional[str] = field(default_factory=lambda: os.environ.get("AGENTLOOP_TOOL_DISCOVERY_COMMAND"))
    tool_call_command: Optional[str] = field(default_factory=lambda: os.environ.get("AGENTLOOP_TOOL_CALL_COMMAND"))
    mcp_servers: Dict[str, MCPServerConfig] = field(default_factory=dict)
    mcp_server_command: Optional[str] = field(default_factory=lambda: os.environ.get("AGENTLOOP_MCP_SERVER_COMMAND"))
    editor: Optional[str] = field(default_factory=lambda: os.environ.get("AGENTLOOP_EDITOR"))
    system_prompt: Optional[str] = None
    user_memory: str = ""
    working_dir: str = field(default_factory=os.getcwd)
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry: RetryConfig = field(default_factory=RetryConfig)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)
    fallback_handler: Optional[FallbackHandler] = None
    model_switched_during_session: bool = False

    def __post_init__(self):
        if self.max_session_turns > MAX_TURNS:
            logger.warning(f"max_session_turns={self.max_session_turns} exceeds {MAX_TURNS}; capping")
            self.max_session_turns = MAX_TURNS

    def set_model(self, model: str) -> None:
        """Switch the active model and remember that the session switched."""
        self.model = model
        self.model_switched_during_session = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """Build a config from a parsed settings file; unset keys keep env defaults."""
        config = cls()
        for key, value in data.items():
            if key == "mcp_servers":
                config.mcp_servers = {
                    name: MCPServerConfig.from_dict(server or {}) for name, server in value.items()
                }
            elif key == "auth_type":
                config.auth_type = AuthType(value)
            elif key == "approval_mode":
                config.approval_mode = ApprovalMode(value)
            elif key == "retry":
                config.retry = RetryConfig(**value)
            elif key == "telemetry":
                config.telemetry = TelemetrySettings(**value)
            elif hasattr(config, key) and key not in ("fallback_handler", "model_switched_during_session"):
                setattr(config, key, value)
            else:
                logger.warning(f"Ignoring unknown config key '{key}'")
        config.__post_init__()
        return config


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Load a config from ``.env``, the environment and an optional file.

    Files ending in ``.json`` are parsed as JSON, everything else as YAML.
    """
    from dotenv import load_dotenv
    load_dotenv()

    if path is None:
        return EngineConfig()

    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        import yaml
        data = yaml.safe_load(text)
    return EngineConfig.from_dict(data or {})
