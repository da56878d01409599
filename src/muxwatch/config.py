"""
User configuration loaded from ~/.muxwatch/config.yaml.

Every getter degrades to a default when the file is absent or malformed,
so a broken config never stops the server or the hook handler.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .settings import get_config_path


CONFIG_PATH: Path = get_config_path()

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7890

DEFAULT_LIMITS = {
    "max_sessions_clients": 50,
    "max_terminal_clients_per_target": 10,
    "max_terminal_clients_total": 100,
    "max_beads_clients": 50,
}


def load_config() -> Dict[str, Any]:
    """Load the YAML config file, returning {} on any problem."""
    if not CONFIG_PATH.exists():
        return {}
    try:
        with open(CONFIG_PATH) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def save_config(config: Dict[str, Any]) -> None:
    """Write the config dict as YAML, creating the directory if needed."""
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_PATH, "w") as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)


def _section(name: str) -> Dict[str, Any]:
    section = load_config().get(name)
    return section if isinstance(section, dict) else {}


def get_broadcast_limits() -> Dict[str, int]:
    """Client caps for the broadcast channels.

    Reads the `broadcast:` section; non-positive or non-integer values
    fall back to the defaults.
    """
    section = _section("broadcast")
    limits = dict(DEFAULT_LIMITS)
    for key in limits:
        value = section.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            limits[key] = value
    return limits


def get_web_api_key() -> Optional[str]:
    """API key required by the server, or None when auth is disabled."""
    key = _section("web").get("api_key")
    if not key:
        return None
    return str(key)


def get_server_bind() -> Dict[str, Any]:
    """Host/port the server binds to by default."""
    section = _section("web")
    host = section.get("host") or DEFAULT_HOST
    port = section.get("port")
    if not isinstance(port, int) or isinstance(port, bool) or not (0 < port < 65536):
        port = DEFAULT_PORT
    return {"host": str(host), "port": port}


def get_batch_prompt_template() -> Optional[str]:
    """Custom prompt template for batch runs, or None for the built-in one."""
    template = _section("batch").get("prompt_template")
    if isinstance(template, str) and template.strip():
        return template
    return None
