"""Shared pytest fixtures for parley tests."""

import stat

import pytest

from parley.core.supervisor import reset_agent_path_cache
from tests.helpers import FakeSupervisor, encode_lines


@pytest.fixture
def mock_parley_home(tmp_path, monkeypatch):
    """Root the store and config in tmp_path for test isolation.

    This ensures tests don't write to the real ~/.parley/ directory. Also
    clears environment overrides that would leak in from the developer's
    shell.
    """
    home = tmp_path / "parley-home"
    monkeypatch.setenv("PARLEY_HOME", str(home))
    monkeypatch.delenv("PARLEY_AGENT_PATH", raising=False)
    monkeypatch.delenv("PARLEY_LOG", raising=False)
    monkeypatch.delenv("PARLEY_LOG_LEVEL", raising=False)
    reset_agent_path_cache()
    yield home
    reset_agent_path_cache()


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()


@pytest.fixture
def registry(mock_parley_home, fake_supervisor):
    """A SessionRegistry backed by the temp store and a FakeSupervisor."""
    from parley.core.registry import SessionRegistry

    return SessionRegistry(supervisor=fake_supervisor)


@pytest.fixture
def fake_agent(tmp_path, monkeypatch):
    """Factory for an executable script that plays the agent's part.

    The script records its arguments to args.txt next to itself, prints the
    given payloads as stream-json, runs any extra shell, and exits.
    PARLEY_AGENT_PATH points at it.
    """

    def make(payloads=(), exit_code: int = 0, extra_sh: str = ""):
        agent_dir = tmp_path / "agent"
        agent_dir.mkdir(exist_ok=True)
        script = agent_dir / "claude"
        body = encode_lines(*payloads)
        script.write_text(
            "#!/bin/sh\n"
            f'printf \'%s\\n\' "$@" > "{agent_dir}/args.txt"\n'
            "cat <<'PARLEY_EOF'\n"
            f"{body}"
            "PARLEY_EOF\n"
            f"{extra_sh}\n"
            f"exit {exit_code}\n"
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        monkeypatch.setenv("PARLEY_AGENT_PATH", str(script))
        reset_agent_path_cache()
        return script

    return make