"""Configuration management.

The daemon builds its Config once with `load_config()` and hands each
component the section it needs; tests build fresh instances the same way.
`.env` is loaded at import so environment overrides apply to every load.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from dispatchhub.constants import (
    AGENT_INPUT_MODE_STREAM,
    AGENT_INPUT_MODES,
    API_DEFAULT_HOST,
    API_DEFAULT_PORT,
    COMMAND_CACHE_TTL_S,
    COMMAND_DISCOVERY_TIMEOUT_S,
    DB_FILENAME,
    DEFAULT_AGENT_BINARY,
    DEFAULT_CLOSE_TIMEOUT_S,
    DEFAULT_SHELL,
    DEFAULT_TERMINAL_COLS,
    DEFAULT_TERMINAL_ROWS,
    EDITOR_MAX_FILE_BYTES,
    HISTORY_DEFAULT_LINES,
    HISTORY_DIRNAME,
    HISTORY_FULL_WINDOW_BYTES,
    HISTORY_TAIL_WINDOW_BYTES,
    LOG_DIRNAME,
)

# Project root (relative to this file)
_project_root = Path(__file__).parent.parent.parent

# Load .env (allow override for tests)
_env_path = os.getenv("DISPATCH_ENV_PATH")
_dotenv_path = Path(_env_path).expanduser() if _env_path else _project_root / ".env"
if not _dotenv_path.is_absolute():
    _dotenv_path = (_project_root / _dotenv_path).resolve()

load_dotenv(_dotenv_path)


@dataclass
class ServerConfig:
    host: str = API_DEFAULT_HOST
    port: int = API_DEFAULT_PORT


@dataclass
class AuthConfig:
    key: str = ""


@dataclass
class StorageConfig:
    data_dir: str = "~/.dispatchhub"

    @property
    def root(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> str:
        """Get database path (lazy-loaded from env var for test compatibility)."""
        env_path = os.getenv("DISPATCH_DB_PATH")
        if env_path:
            return env_path
        return str(self.root / DB_FILENAME)

    @property
    def history_dir(self) -> Path:
        return self.root / HISTORY_DIRNAME

    @property
    def log_dir(self) -> Path:
        return self.root / LOG_DIRNAME


@dataclass
class TerminalConfig:
    shell: str = DEFAULT_SHELL
    cols: int = DEFAULT_TERMINAL_COLS
    rows: int = DEFAULT_TERMINAL_ROWS
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT_S


@dataclass
class AgentConfig:
    """Configuration for the AI agent CLI backend."""

    binary: str = DEFAULT_AGENT_BINARY
    flags: list[str] = field(default_factory=list)  # Extra flags appended to every invocation
    input_mode: str = AGENT_INPUT_MODE_STREAM
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT_S
    discovery_timeout: float = COMMAND_DISCOVERY_TIMEOUT_S
    command_cache_ttl: float = COMMAND_CACHE_TTL_S


@dataclass
class EditorConfig:
    max_file_bytes: int = EDITOR_MAX_FILE_BYTES


@dataclass
class HistoryConfig:
    tail_window_bytes: int = HISTORY_TAIL_WINDOW_BYTES
    full_window_bytes: int = HISTORY_FULL_WINDOW_BYTES
    default_lines: int = HISTORY_DEFAULT_LINES
    fsync: bool = False


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    editor: EditorConfig = field(default_factory=EditorConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    log_level: str = "INFO"


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def _build_config(raw: Dict[str, Any]) -> Config:
    agent = AgentConfig(**_section(raw, "agent"))
    if agent.input_mode not in AGENT_INPUT_MODES:
        raise ValueError(f"agent.input_mode must be one of {AGENT_INPUT_MODES}, got '{agent.input_mode}'")

    cfg = Config(
        server=ServerConfig(**_section(raw, "server")),
        auth=AuthConfig(**_section(raw, "auth")),
        storage=StorageConfig(**_section(raw, "storage")),
        terminal=TerminalConfig(**_section(raw, "terminal")),
        agent=agent,
        editor=EditorConfig(**_section(raw, "editor")),
        history=HistoryConfig(**_section(raw, "history")),
        log_level=str(raw.get("log_level", "INFO")),
    )

    # Environment overrides win over the YAML file
    if os.getenv("DISPATCH_KEY"):
        cfg.auth.key = os.environ["DISPATCH_KEY"]
    if os.getenv("DISPATCH_DATA_DIR"):
        cfg.storage.data_dir = os.environ["DISPATCH_DATA_DIR"]
    if os.getenv("DISPATCH_HOST"):
        cfg.server.host = os.environ["DISPATCH_HOST"]
    if os.getenv("DISPATCH_PORT"):
        cfg.server.port = int(os.environ["DISPATCH_PORT"])
    if os.getenv("DISPATCH_LOG_LEVEL"):
        cfg.log_level = os.environ["DISPATCH_LOG_LEVEL"]
    return cfg


def load_config(path: Optional[Path] = None) -> Config:
    """Load config from YAML, falling back to defaults when the file is absent.

    Args:
        path: Config file path (defaults to DISPATCH_CONFIG_PATH or <project>/config.yml)

    Returns:
        Fully populated Config
    """
    if path is None:
        env_path = os.getenv("DISPATCH_CONFIG_PATH")
        path = Path(env_path).expanduser() if env_path else _project_root / "config.yml"

    raw: Dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None:
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            raw = loaded

    return _build_config(raw)
