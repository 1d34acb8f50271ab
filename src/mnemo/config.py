"""Configuration loading from environment variables and mnemo.toml."""

from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, fields

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any

import tomli_w

from mnemo.errors import ConfigError

logger = logging.getLogger(__name__)

_HOME_DIR = Path.home() / ".mnemo"
_DEFAULT_WORKSPACE = _HOME_DIR / "workspace"
_CONFIG_FILENAME = "mnemo.toml"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str | int | float) -> float:
    """Parse '90', '45s', '30m' or '2h' into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


@dataclass
class AgentConfig:
    """Model selection and session budget."""

    model: str = "claude-cli"
    fallback: str | None = None
    timeout: int = 300
    max_tokens: int = 4096
    context_window: int = 128_000
    reserve_tokens: int = 8_000
    context_fraction: float = 0.25
    top_k: int = 6
    recent_daily_logs: int = 2
    compaction_timeout: float = 60.0


@dataclass
class MemoryConfig:
    """Knowledge corpus and index settings."""

    workspace: Path = _DEFAULT_WORKSPACE
    index_path: Path | None = None
    chunk_size: int = 400
    chunk_overlap: int = 80
    debounce_seconds: float = 2.0
    max_pending: int = 1024

    @property
    def db_path(self) -> Path:
        return self.index_path or self.workspace / ".index" / "memory.sqlite"


@dataclass
class ActiveHoursConfig:
    start: str = "09:00"
    end: str = "22:00"


@dataclass
class HeartbeatConfig:
    """Autonomous task runner settings."""

    enabled: bool = True
    interval: float = 1800.0
    active_hours: ActiveHoursConfig | None = None


@dataclass
class ProvidersConfig:
    """Endpoints for HTTP-based providers."""

    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key_env: str = "OPENAI_API_KEY"
    local_base_url: str = "http://localhost:11434/v1"


@dataclass
class MnemoConfig:
    """Top-level mnemo configuration."""

    agent: AgentConfig = field(default_factory=AgentConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    pid_file: Path = _HOME_DIR / "mnemo.pid"
    log_level: str = "INFO"
    source: Path | None = None

    def validate(self) -> None:
        """Raise ConfigError for values the core cannot run with."""
        agent, memory = self.agent, self.memory
        if memory.chunk_size < 1:
            raise ConfigError("memory.chunk_size must be >= 1")
        if memory.chunk_overlap < 0:
            raise ConfigError("memory.chunk_overlap must be >= 0")
        if memory.chunk_overlap >= memory.chunk_size:
            raise ConfigError(
                f"memory.chunk_overlap ({memory.chunk_overlap}) must be less than "
                f"memory.chunk_size ({memory.chunk_size})"
            )
        if agent.reserve_tokens < 0 or agent.reserve_tokens >= agent.context_window:
            raise ConfigError("agent.reserve_tokens must be in [0, agent.context_window)")
        if not 0 < agent.context_fraction < 1:
            raise ConfigError("agent.context_fraction must be between 0 and 1")
        if self.heartbeat.interval <= 0:
            raise ConfigError("heartbeat.interval must be positive")
        if self.heartbeat.active_hours:
            # Imported here to keep config free of scheduler imports at module load
            from mnemo.scheduler.heartbeat import ActiveHours

            ActiveHours.parse(self.heartbeat.active_hours.start, self.heartbeat.active_hours.end)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["memory"]["db_path"] = str(self.memory.db_path)
        return _stringify_paths(data)


def _stringify_paths(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _stringify_paths(v) for k, v in value.items()}
    if isinstance(value, Path):
        return str(value)
    return value


def config_value(config: MnemoConfig, key: str) -> Any:
    """Look up a dotted key such as 'agent.context_window'."""
    node: Any = config.to_dict()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise ConfigError(f"Unknown config key: {key}")
        node = node[part]
    return node


def find_config_file() -> Path | None:
    for candidate in [Path.cwd() / _CONFIG_FILENAME, _HOME_DIR / _CONFIG_FILENAME]:
        if candidate.exists():
            return candidate
    return None


def default_config_path() -> Path:
    return _HOME_DIR / _CONFIG_FILENAME


def _read_file(path: Path) -> dict:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e


def load_config(config_path: Path | None = None, validate: bool = True) -> MnemoConfig:
    """Load configuration from environment variables and optional mnemo.toml.

    Priority: environment variables > mnemo.toml > defaults.
    """
    source = config_path if config_path and config_path.exists() else find_config_file()
    file_data = _read_file(source) if source else {}
    config = config_from_data(file_data, source)
    if validate:
        config.validate()
    return config


def config_from_data(file_data: dict, source: Path | None = None) -> MnemoConfig:
    """Build a config from parsed mnemo.toml data plus environment overrides."""
    agent_data = file_data.get("agent", {})
    memory_data = file_data.get("memory", {})
    heartbeat_data = file_data.get("heartbeat", {})
    providers_data = file_data.get("providers", {})

    active_hours = None
    hours_data = heartbeat_data.get("active_hours")
    env_hours = os.getenv("MNEMO_ACTIVE_HOURS")  # "09:00-18:00"
    if env_hours:
        start, _, end = env_hours.partition("-")
        active_hours = ActiveHoursConfig(start=start.strip(), end=end.strip())
    elif hours_data:
        active_hours = ActiveHoursConfig(
            start=hours_data.get("start", "09:00"), end=hours_data.get("end", "22:00")
        )

    workspace = Path(
        os.getenv("MNEMO_WORKSPACE", memory_data.get("workspace", str(_DEFAULT_WORKSPACE)))
    ).expanduser()
    index_path = memory_data.get("index_path")

    try:
        config = MnemoConfig(
            agent=AgentConfig(
                model=os.getenv("MNEMO_MODEL", agent_data.get("model", "claude-cli")),
                fallback=os.getenv("MNEMO_FALLBACK", agent_data.get("fallback")),
                timeout=int(os.getenv("MNEMO_TIMEOUT", agent_data.get("timeout", 300))),
                max_tokens=int(agent_data.get("max_tokens", 4096)),
                context_window=int(
                    os.getenv("MNEMO_CONTEXT_WINDOW", agent_data.get("context_window", 128_000))
                ),
                reserve_tokens=int(agent_data.get("reserve_tokens", 8_000)),
                context_fraction=float(agent_data.get("context_fraction", 0.25)),
                top_k=int(agent_data.get("top_k", 6)),
                recent_daily_logs=int(agent_data.get("recent_daily_logs", 2)),
                compaction_timeout=parse_duration(agent_data.get("compaction_timeout", 60)),
            ),
            memory=MemoryConfig(
                workspace=workspace,
                index_path=Path(index_path).expanduser() if index_path else None,
                chunk_size=int(memory_data.get("chunk_size", 400)),
                chunk_overlap=int(memory_data.get("chunk_overlap", 80)),
                debounce_seconds=float(memory_data.get("debounce_seconds", 2.0)),
                max_pending=int(memory_data.get("max_pending", 1024)),
            ),
            heartbeat=HeartbeatConfig(
                enabled=bool(heartbeat_data.get("enabled", True)),
                interval=parse_duration(
                    os.getenv("MNEMO_HEARTBEAT", heartbeat_data.get("interval", "30m"))
                ),
                active_hours=active_hours,
            ),
            providers=ProvidersConfig(
                openai_base_url=providers_data.get("openai_base_url", "https://api.openai.com/v1"),
                openai_api_key_env=providers_data.get("openai_api_key_env", "OPENAI_API_KEY"),
                local_base_url=providers_data.get("local_base_url", "http://localhost:11434/v1"),
            ),
            pid_file=_HOME_DIR / "mnemo.pid",
            log_level=os.getenv("MNEMO_LOG_LEVEL", file_data.get("log_level", "INFO")),
            source=source,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e
    return config


# ── Writing mnemo.toml ───────────────────────────────────────

_SECTIONS = {
    "agent": AgentConfig,
    "memory": MemoryConfig,
    "heartbeat": HeartbeatConfig,
    "providers": ProvidersConfig,
}


def _drop_none(value: Any) -> Any:
    """TOML has no null; unset optional values are left out of the file."""
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    return value


def to_toml(data: dict[str, Any]) -> str:
    return tomli_w.dumps(_drop_none(data))


def config_to_file_data(config: MnemoConfig) -> dict[str, Any]:
    """The settings of ``config`` in mnemo.toml form."""
    data = config.to_dict()
    data["memory"].pop("db_path")
    for key in ("source", "pid_file"):
        data.pop(key)
    return _drop_none(data)


def write_config(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_toml(data), encoding="utf-8")
    logger.info("Wrote %s", path)


def init_config(path: Path, force: bool = False) -> None:
    """Write a mnemo.toml holding every default setting."""
    if path.exists() and not force:
        raise ConfigError(f"Config file already exists at {path}. Use --force to overwrite.")
    write_config(path, config_to_file_data(MnemoConfig()))


def _coerce(key: str, raw: str) -> Any:
    """Convert a command-line string to the type of the setting ``key``."""
    section, _, name = key.partition(".")
    if not name:
        if key != "log_level":
            raise ConfigError(f"Unknown config key: {key}")
        return raw.upper()
    cls = _SECTIONS.get(section)
    types = {f.name: str(f.type) for f in fields(cls)} if cls else {}
    if name not in types:
        raise ConfigError(f"Unknown config key: {key}")

    if key == "heartbeat.active_hours":
        start, _, end = raw.partition("-")
        return {"start": start.strip(), "end": end.strip()}
    kind = types[name]
    try:
        if kind.startswith("bool"):
            if raw.lower() not in ("true", "false"):
                raise ValueError(f"expected true or false, got {raw!r}")
            return raw.lower() == "true"
        if kind.startswith("int"):
            return int(raw)
        if kind.startswith("float"):
            try:
                return float(raw)
            except ValueError:
                # Durations such as "30m" are stored as written
                parse_duration(raw)
                return raw
    except ValueError as e:
        raise ConfigError(f"Invalid value for {key}: {e}") from e
    return raw


def set_config_value(path: Path, key: str, raw: str) -> Any:
    """Set one dotted key in the mnemo.toml at ``path`` and return the stored value.

    The result is validated before anything is written.
    """
    data = _read_file(path) if path.exists() else {}
    value = _coerce(key, raw)
    section, _, name = key.partition(".")
    if name:
        data.setdefault(section, {})[name] = value
    else:
        data[section] = value
    config_from_data(data, path).validate()
    write_config(path, data)
    return value
