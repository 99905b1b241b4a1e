"""Paths and user configuration for agent-monitor."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

log = logging.getLogger(__name__)


def resolve_data_dir() -> Path:
    """Return the data directory (``~/.claude/agent-monitor`` unless overridden)."""
    override = os.environ.get("AGENT_MONITOR_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".claude" / "agent-monitor"


def state_dir() -> Path:
    """Directory of per-session hook logs."""
    return resolve_data_dir() / "sessions"


def config_path() -> Path:
    return resolve_data_dir() / "config.json"


def archive_map_path() -> Path:
    return resolve_data_dir() / "archive-map.json"


# Claude Code transcript store (read-only for us)
PROJECTS_DIR = Path.home() / ".claude" / "projects"

PROVIDERS: dict[str, dict] = {
    "anthropic": {
        "base_url": "https://api.anthropic.com/v1",
        "models": ["claude-haiku-4-5-20251001", "claude-sonnet-4-5-20250929"],
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "models": ["gpt-4o-mini", "gpt-4o"],
    },
    "custom": {
        "base_url": "",
        "models": [],
    },
}


@dataclass(frozen=True)
class MonitorConfig:
    provider: str = "anthropic"
    api_key: str = ""
    base_url: str = PROVIDERS["anthropic"]["base_url"]
    model: str = PROVIDERS["anthropic"]["models"][0]
    max_recent_tools: int = 10
    archive_path: str = ""
    notifications: bool = False

    @property
    def enrichment_enabled(self) -> bool:
        return bool(self.api_key and self.model and self.base_url)


# JSON keys in config.json -> MonitorConfig field names
_FILE_KEYS = {
    "provider": "provider",
    "apiKey": "api_key",
    "baseUrl": "base_url",
    "model": "model",
    "archivePath": "archive_path",
}

_ENV_KEYS = {
    "AGENT_MONITOR_PROVIDER": "provider",
    "AGENT_MONITOR_API_KEY": "api_key",
    "AGENT_MONITOR_BASE_URL": "base_url",
    "AGENT_MONITOR_MODEL": "model",
    "AGENT_MONITOR_ARCHIVE_PATH": "archive_path",
}


def load_config(path: Path | None = None) -> MonitorConfig:
    """Load config.json, falling back to defaults for missing or bad values.

    Environment variables in the ``AGENT_MONITOR_*`` namespace override the
    file. A malformed file is logged and treated as empty.
    """
    path = path or config_path()
    defaults = MonitorConfig()
    values: dict = {}

    parsed: dict = {}
    try:
        with open(path, encoding="utf-8") as f:
            parsed = json.load(f)
    except FileNotFoundError:
        pass
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Invalid config file %s; using defaults: %s", path, exc)
    if not isinstance(parsed, dict):
        log.warning("Config file %s is not a JSON object; using defaults", path)
        parsed = {}

    for key, attr in _FILE_KEYS.items():
        value = parsed.get(key)
        if isinstance(value, str):
            values[attr] = value

    max_tools = parsed.get("maxRecentTools")
    if isinstance(max_tools, int) and not isinstance(max_tools, bool) and max_tools > 0:
        values["max_recent_tools"] = max_tools

    notifications = parsed.get("notifications")
    if isinstance(notifications, bool):
        values["notifications"] = notifications

    for env_name, attr in _ENV_KEYS.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[attr] = env_value

    # A provider switch without an explicit base URL picks that provider's default.
    provider = values.get("provider", defaults.provider)
    if "base_url" not in values and provider in PROVIDERS:
        values["base_url"] = PROVIDERS[provider]["base_url"]

    return replace(defaults, **values)


def save_config(config: MonitorConfig, path: Path | None = None) -> None:
    """Write config.json, creating its directory if needed."""
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "provider": config.provider,
        "apiKey": config.api_key,
        "baseUrl": config.base_url,
        "model": config.model,
        "maxRecentTools": config.max_recent_tools,
        "archivePath": config.archive_path,
        "notifications": config.notifications,
    }
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def get_settings(config: MonitorConfig) -> dict:
    """Return the configuration with the API key masked."""
    masked = ""
    if config.api_key:
        key = config.api_key
        masked = key[:3] + "…" + key[-4:] if len(key) > 8 else "••••"
    return {
        "provider": config.provider,
        "apiKey": masked,
        "baseUrl": config.base_url,
        "model": config.model,
        "maxRecentTools": config.max_recent_tools,
        "archivePath": config.archive_path,
        "notifications": config.notifications,
    }
