"""Configuration management for replcast.

Settings come from, in increasing priority:
    ~/.config/replcast/config.cfg   ([DEFAULT] host, port, timeout, debug)
    .env in the working directory   (loaded into the environment)
    environment variables           (REPLCAST_HOST, REPLCAST_PORT, ...)
    .nrepl-port in the working directory, written by nREPL servers
        (only used when no port is configured elsewhere)

Provides the server address and a RunContext carrying per-run settings.
"""

import configparser
from dataclasses import dataclass, field
import os
from pathlib import Path
import time
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from replcast.core.errors import ConfigError

# Default location for user configuration.
CONFIG_PATH = Path.home() / ".config" / "replcast" / "config.cfg"

DEFAULT_HOST = "127.0.0.1"
PORT_FILE = ".nrepl-port"


@dataclass
class RunContext:
    """Per-run settings handed to the session orchestrator."""
    started_at: float = field(default_factory=time.monotonic)
    debug: bool = False
    hard_timeout: float = 30.0
    min_wait: float = 0.005
    max_wait: float = 2.0
    namespace_timeout: float = 2.0
    pipe_grace: float = 2.0
    force_pipes: Optional[bool] = None
    pipe_dir: Optional[str] = None

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


def load_raw_config(path: Path = CONFIG_PATH) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.
    Values are returned with lowercase keys for convenience.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})

    return data


def load_env_file(cwd: Optional[Path] = None) -> bool:
    """Load ``.env`` from ``cwd`` into the environment without overriding it."""
    env_path = (cwd or Path.cwd()) / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(env_path, override=False)


def _get_bool(raw: Dict[str, str], key: str, default: bool = False) -> bool:
    value = raw.get(key, "")
    if isinstance(value, bool):
        return value
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _read_port_file(cwd: Path) -> Optional[str]:
    port_file = cwd / PORT_FILE
    if not port_file.exists():
        return None
    text = port_file.read_text().strip()
    return text or None


def get_address(
    raw: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
    port: Optional[int] = None,
) -> Tuple[str, int]:
    """
    Resolve the nREPL server address.

    Args:
        raw: Raw config values (default: the config file)
        cwd: Directory searched for ``.nrepl-port``
        port: Port given on the command line; skips the port lookup but
            not the host lookup

    Raises ConfigError if no port is configured or it is not a number.
    """
    raw = raw if raw is not None else load_raw_config()

    host = (
        os.environ.get("REPLCAST_HOST")
        or raw.get("host", "")
        or DEFAULT_HOST
    ).strip()

    if port is None:
        port = _get_port(raw, cwd or Path.cwd())
    if not 0 < port < 65536:
        raise ConfigError(f"nREPL port out of range: {port}")

    return host, port


def _get_port(raw: Dict[str, str], cwd: Path) -> int:
    port_text = (
        os.environ.get("REPLCAST_PORT")
        or os.environ.get("NREPL_PORT")
        or raw.get("port", "")
        or _read_port_file(cwd)
        or ""
    ).strip()
    if not port_text:
        raise ConfigError(
            "No nREPL port configured. Set REPLCAST_PORT or start a server "
            f"that writes {PORT_FILE}."
        )

    try:
        return int(port_text)
    except ValueError:
        raise ConfigError(f"Invalid nREPL port '{port_text}'")


def get_run_context(
    raw: Optional[Dict[str, str]] = None,
    debug: Optional[bool] = None,
    force_pipes: Optional[bool] = None,
) -> RunContext:
    """Build a RunContext from raw configuration and environment overrides."""
    raw = raw if raw is not None else load_raw_config()

    if debug is None:
        env_debug = os.environ.get("REPLCAST_DEBUG")
        if env_debug is not None:
            debug = _get_bool({"debug": env_debug}, "debug")
        else:
            debug = _get_bool(raw, "debug", False)

    timeout_env = os.environ.get("REPLCAST_TIMEOUT_S")
    if timeout_env is not None and str(timeout_env).strip() != "":
        hard_timeout = _get_seconds(timeout_env, "REPLCAST_TIMEOUT_S")
    else:
        hard_timeout = _get_seconds(raw.get("timeout", "") or "30", "timeout")

    context = RunContext(
        debug=debug,
        hard_timeout=hard_timeout,
        max_wait=_get_seconds(raw.get("max_wait", "") or "2.0", "max_wait"),
        force_pipes=force_pipes,
    )
    if context.max_wait < context.min_wait:
        raise ConfigError(f"max_wait must be at least {context.min_wait}s")
    return context


def _get_seconds(value: str, name: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise ConfigError(f"Invalid value for {name}: '{value}'")
    if seconds <= 0:
        raise ConfigError(f"{name} must be positive, got {seconds}")
    return seconds
