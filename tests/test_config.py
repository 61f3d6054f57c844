"""Tests for parley configuration."""

from pathlib import Path

import orjson
import pytest

from parley.core.config import (
    get_agent_path_override,
    get_config_path,
    get_default_cwd,
    get_default_model,
    get_default_permission_mode,
    get_parley_home,
    get_setting,
    read_config,
    set_setting,
    write_config,
)


def test_parley_home_from_env(mock_parley_home):
    assert get_parley_home() == mock_parley_home
    assert get_config_path() == mock_parley_home / "config.json"


def test_parley_home_default(monkeypatch):
    monkeypatch.delenv("PARLEY_HOME", raising=False)
    assert get_parley_home() == Path.home() / ".parley"


def test_read_missing_config(mock_parley_home):
    assert read_config() == {}


def test_read_corrupt_config(mock_parley_home):
    mock_parley_home.mkdir(parents=True)
    get_config_path().write_text("{oops")
    assert read_config() == {}


def test_write_then_read(mock_parley_home):
    write_config({"default_model": "opus"})
    assert read_config() == {"default_model": "opus"}
    assert orjson.loads(get_config_path().read_bytes()) == {"default_model": "opus"}


def test_set_setting(mock_parley_home):
    set_setting("default_model", "claude-opus-4-1")
    assert get_setting("default_model") == "claude-opus-4-1"
    assert get_default_model() == "claude-opus-4-1"


def test_set_setting_empty_value_removes(mock_parley_home):
    set_setting("default_model", "opus")
    set_setting("default_model", "")
    assert "default_model" not in read_config()
    assert get_default_model() is None


def test_set_unknown_setting(mock_parley_home):
    with pytest.raises(ValueError, match="Unknown setting"):
        set_setting("colour", "blue")


def test_set_invalid_permission_mode(mock_parley_home):
    with pytest.raises(ValueError, match="Invalid permission mode"):
        set_setting("default_permission_mode", "yolo")


def test_default_permission_mode(mock_parley_home):
    assert get_default_permission_mode() == "default"
    set_setting("default_permission_mode", "acceptEdits")
    assert get_default_permission_mode() == "acceptEdits"


def test_default_permission_mode_ignores_bad_stored_value(mock_parley_home):
    write_config({"default_permission_mode": "yolo"})
    assert get_default_permission_mode() == "default"


def test_default_cwd(mock_parley_home, tmp_path):
    assert get_default_cwd() == str(Path.home())
    set_setting("default_cwd", str(tmp_path))
    assert get_default_cwd() == str(tmp_path)


def test_agent_path_override(mock_parley_home, monkeypatch):
    assert get_agent_path_override() is None

    set_setting("agent_path", "/opt/claude")
    assert get_agent_path_override() == "/opt/claude"

    # Environment wins over config
    monkeypatch.setenv("PARLEY_AGENT_PATH", "/env/claude")
    assert get_agent_path_override() == "/env/claude"
