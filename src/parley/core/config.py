"""Parley configuration management.

Handles ~/.parley/config.json for user settings: default model, permission
mode, working directory, agent executable path and logging.
"""

import os
from pathlib import Path

import orjson

PARLEY_HOME_ENV = "PARLEY_HOME"
AGENT_PATH_ENV = "PARLEY_AGENT_PATH"

PERMISSION_MODES = ("default", "acceptEdits", "bypassPermissions")

DEFAULT_PERMISSION_MODE = "default"

# Settings accepted by `parley config set`
SETTING_KEYS = {
    "default_model",
    "default_permission_mode",
    "default_cwd",
    "agent_path",
    "log_level",
    "log_file",
}


def get_parley_home() -> Path:
    """Get the base directory for parley state.

    Returns $PARLEY_HOME if set, otherwise ~/.parley.
    """
    if env_home := os.environ.get(PARLEY_HOME_ENV):
        return Path(env_home).expanduser()
    return Path.home() / ".parley"


def get_config_path() -> Path:
    """Get the path to parley's config file."""
    return get_parley_home() / "config.json"


def read_config() -> dict:
    """Read parley config, returning empty dict if not found."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    try:
        content = config_path.read_bytes()
        return orjson.loads(content) if content else {}
    except (orjson.JSONDecodeError, OSError):
        return {}


def write_config(config: dict) -> None:
    """Write parley config."""
    config_path = get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_bytes(orjson.dumps(config, option=orjson.OPT_INDENT_2))


def get_setting(key: str, default=None):
    """Read a single setting."""
    return read_config().get(key, default)


def set_setting(key: str, value: str | None) -> None:
    """Validate and store a single setting.

    Args:
        key: One of SETTING_KEYS.
        value: New value. None or "" removes the setting.

    Raises:
        ValueError: If the key is unknown or the value is invalid for it.
    """
    if key not in SETTING_KEYS:
        raise ValueError(f"Unknown setting: {key}")
    if key == "default_permission_mode" and value and value not in PERMISSION_MODES:
        raise ValueError(
            f"Invalid permission mode: {value}. Must be one of {', '.join(PERMISSION_MODES)}"
        )

    config = read_config()
    if value:
        config[key] = value
    else:
        config.pop(key, None)
    write_config(config)


def get_default_model() -> str | None:
    """Model passed to the agent when a send does not name one (None = agent default)."""
    return read_config().get("default_model") or None


def get_default_permission_mode() -> str:
    """Permission mode passed to the agent when a send does not name one."""
    mode = read_config().get("default_permission_mode")
    if mode in PERMISSION_MODES:
        return mode
    return DEFAULT_PERMISSION_MODE


def get_default_cwd() -> str:
    """Working directory for sessions created without one."""
    return read_config().get("default_cwd") or str(Path.home())


def get_agent_path_override() -> str | None:
    """Explicit agent executable, from $PARLEY_AGENT_PATH or config."""
    return os.environ.get(AGENT_PATH_ENV) or read_config().get("agent_path") or None
