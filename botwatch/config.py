"""
botwatch configuration dataclass.

Defaults < environment (BOTWATCH_* variables) < CLI flags. The CLI builds a
config with from_env() and then applies its own overrides.
"""
from __future__ import annotations
import os
import shlex
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_TOOL_NAMES = (
    "list_files",
    "read_file",
    "write_file",
    "edit_file",
    "create_page",
    "commit_changes",
)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class SupervisorConfig:
    """
    Unified configuration for one supervised bot session.

    Every timing constant is overridable so tests can compress a 30 second
    startup window into a fraction of a second.
    """
    # Child
    command: List[str] = field(default_factory=lambda: ["node", "index.js"])
    cwd: Optional[str] = None
    ready_marker: str = "Bot is ready"
    port_env_var: str = "GUI_PORT"

    # Paths
    log_dir: str = "session-logs"

    # Timing (seconds)
    startup_timeout: float = 30.0
    grace_period: float = 5.0
    health_interval: float = 30.0
    hang_threshold: float = 300.0
    drain_timeout: float = 2.0

    # Buffering / reporting
    flush_threshold: int = 100
    tool_call_window: int = 20
    tool_names: List[str] = field(default_factory=lambda: list(DEFAULT_TOOL_NAMES))

    # Auxiliary dashboard
    gui_port: int = 3001
    gui_enabled: bool = True
    gui_command: Optional[List[str]] = None
    gui_settle_delay: float = 2.0

    @classmethod
    def from_env(cls) -> "SupervisorConfig":
        """Build a config from BOTWATCH_* environment variables."""
        cfg = cls()
        command = os.getenv("BOTWATCH_COMMAND", "").strip()
        if command:
            cfg.command = shlex.split(command)
        cfg.log_dir = os.getenv("BOTWATCH_LOG_DIR", cfg.log_dir)
        cfg.ready_marker = os.getenv("BOTWATCH_READY_MARKER", cfg.ready_marker)
        cfg.startup_timeout = _env_float("BOTWATCH_STARTUP_TIMEOUT", cfg.startup_timeout)
        cfg.grace_period = _env_float("BOTWATCH_GRACE_PERIOD", cfg.grace_period)
        cfg.health_interval = _env_float("BOTWATCH_HEALTH_INTERVAL", cfg.health_interval)
        cfg.hang_threshold = _env_float("BOTWATCH_HANG_THRESHOLD", cfg.hang_threshold)
        cfg.flush_threshold = max(1, _env_int("BOTWATCH_FLUSH_THRESHOLD", cfg.flush_threshold))
        cfg.gui_port = _env_int(cfg.port_env_var, cfg.gui_port)
        cfg.gui_enabled = not _env_bool("BOTWATCH_NO_GUI", False)
        extra_tools = os.getenv("BOTWATCH_TOOL_NAMES", "")
        for name in extra_tools.split(","):
            name = name.strip()
            if name and name not in cfg.tool_names:
                cfg.tool_names.append(name)
        return cfg
