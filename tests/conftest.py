"""Shared fixtures."""

import pytest


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.claude directory."""
    home = tmp_path / "monitor-home"
    monkeypatch.setenv("AGENT_MONITOR_HOME", str(home))
    for name in (
        "AGENT_MONITOR_PROVIDER",
        "AGENT_MONITOR_API_KEY",
        "AGENT_MONITOR_BASE_URL",
        "AGENT_MONITOR_MODEL",
        "AGENT_MONITOR_ARCHIVE_PATH",
        "AGENT_MONITOR_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "sessions"
    path.mkdir()
    return path
