"""autoloop configuration management."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from autoloop.exceptions import ConfigError

logger = logging.getLogger(__name__)

AUTOLOOP_HOME = Path.home() / ".autoloop"
AUTOLOOP_DB = AUTOLOOP_HOME / "autoloop.db"
AUTOLOOP_CONFIG = AUTOLOOP_HOME / "config.json"
AUTOLOOP_SNAPSHOTS = AUTOLOOP_HOME / "snapshots"
AUTOLOOP_LOGS = AUTOLOOP_HOME / "logs"

# Reviewer variants known to the reviewer registry
REVIEWER_PROVIDERS = ("anthropic", "gemini", "openai", "claude-sdk", "tiered")


@dataclass
class SessionConfig:
    """Interactive session defaults."""

    shell: str = ""  # empty = $SHELL, then bash
    agent_command: str = "claude"
    launch_delay_seconds: float = 1.0
    idle_threshold_seconds: float = 5.0
    recent_lines: int = 50
    cols: int = 80
    rows: int = 30
    term: str = "xterm-color"


@dataclass
class LoopConfig:
    """Orchestrator timings and retry budget."""

    settle_delay_seconds: float = 2.0
    max_auto_fixes: int = 2
    verify_profile: str = "lint"
    verify_timeout_seconds: float = 600.0
    snapshot_timeout_seconds: float = 300.0
    review_timeout_seconds: float = 180.0


@dataclass
class ReviewerConfig:
    """Reviewer selection and credentials.

    Keys normally come from the environment:
        ANTHROPIC_API_KEY, GEMINI_API_KEY (or GOOGLE_AI_API_KEY), OPENAI_API_KEY
    """

    provider: str = "anthropic"
    anthropic_api_key: str = ""
    gemini_api_key: str = ""
    openai_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-latest"
    gemini_model: str = "gemini-1.5-flash"
    openai_model: str = "gpt-4o"
    claude_sdk_model: str = "claude-sonnet-4-5"
    max_tokens: int = 1000
    http_timeout_seconds: float = 120.0

    @property
    def has_credential(self) -> bool:
        return bool(self.anthropic_api_key or self.gemini_api_key or self.openai_api_key)


@dataclass
class ServerConfig:
    """WebSocket bridge settings."""

    host: str = "127.0.0.1"
    port: int = 9850


_SECRET_FIELDS = {"anthropic_api_key", "gemini_api_key", "openai_api_key"}


def coerce_value(current, value):
    """Convert a file or command-line value to the type of a field's current value.

    Numeric strings are accepted for numeric fields ("3" -> 3). Raises
    ValueError for anything that does not convert cleanly.
    """
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("1", "true", "yes", "0", "false", "no"):
            return value.lower() in ("1", "true", "yes")
        raise ValueError(f"expected a boolean, got {value!r}")
    if isinstance(current, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"expected a number, got {value!r}")
        if isinstance(current, int) and isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        return type(current)(value)
    if isinstance(current, str) and not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


@dataclass
class AutoloopConfig:
    """Top-level autoloop configuration."""

    session: SessionConfig = field(default_factory=SessionConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "AutoloopConfig":
        """Load config from disk or return defaults.

        Env vars override file values for credentials, the reviewer
        provider and the agent launch command.
        """
        config_path = path or AUTOLOOP_CONFIG
        config = cls()
        if config_path.exists():
            try:
                data = json.loads(config_path.read_text())
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid config file {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Invalid config file {config_path}: expected an object")
            for section in ("session", "loop", "reviewer", "server"):
                target = getattr(config, section)
                known = {f.name for f in fields(target)}
                values = data.get(section) or {}
                if not isinstance(values, dict):
                    raise ConfigError(f"Invalid config section '{section}' in {config_path}")
                for k, v in values.items():
                    if k not in known:
                        logger.warning(f"Ignoring unknown config key: {section}.{k}")
                        continue
                    try:
                        setattr(target, k, coerce_value(getattr(target, k), v))
                    except ValueError as e:
                        raise ConfigError(f"Invalid value for {section}.{k}: {e}") from e

        anthropic_key = os.environ.get("ANTHROPIC_API_KEY")
        gemini_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_AI_API_KEY")
        openai_key = os.environ.get("OPENAI_API_KEY")
        provider = os.environ.get("AUTOLOOP_REVIEWER")
        agent_command = os.environ.get("AUTOLOOP_AGENT_COMMAND")

        if anthropic_key:
            config.reviewer.anthropic_api_key = anthropic_key
        if gemini_key:
            config.reviewer.gemini_api_key = gemini_key
        if openai_key:
            config.reviewer.openai_api_key = openai_key
        if provider:
            config.reviewer.provider = provider
        if agent_command:
            config.session.agent_command = agent_command

        config.validate()
        return config

    def validate(self) -> None:
        """Reject configurations that would only fail later at call time."""
        if self.reviewer.provider not in REVIEWER_PROVIDERS:
            raise ConfigError(
                f"Unknown reviewer provider '{self.reviewer.provider}' "
                f"(known: {', '.join(REVIEWER_PROVIDERS)})"
            )
        if self.loop.max_auto_fixes < 0:
            raise ConfigError("loop.max_auto_fixes must be >= 0")
        if self.session.idle_threshold_seconds <= 0:
            raise ConfigError("session.idle_threshold_seconds must be > 0")
        if self.session.recent_lines < 1:
            raise ConfigError("session.recent_lines must be >= 1")

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk. API keys are never written."""
        config_path = path or AUTOLOOP_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        reviewer = {k: v for k, v in asdict(self.reviewer).items() if k not in _SECRET_FIELDS}
        data = {
            "session": asdict(self.session),
            "loop": asdict(self.loop),
            "reviewer": reviewer,
            "server": asdict(self.server),
        }
        config_path.write_text(json.dumps(data, indent=2))


def ensure_autoloop_home() -> None:
    """Create autoloop home directory structure."""
    AUTOLOOP_HOME.mkdir(parents=True, exist_ok=True)
    AUTOLOOP_SNAPSHOTS.mkdir(parents=True, exist_ok=True)
    AUTOLOOP_LOGS.mkdir(parents=True, exist_ok=True)
