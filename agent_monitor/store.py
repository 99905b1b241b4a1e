"""Per-session append-only event logs written by hooks and read by the engine."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .models import Event, SchemaError, parse_event

log = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"


def session_log_path(session_id: str, state_dir: Path) -> Path:
    return Path(state_dir) / f"{session_id}{LOG_SUFFIX}"


def append_event(record: dict, state_dir: Path) -> Path:
    """Append one event record as a single JSON line to its session's log.

    This is the write side used by hook processes: it never reads the log
    and never waits on the engine.
    """
    session_id = record["session_id"]
    state_dir = Path(state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    path = session_log_path(session_id, state_dir)
    line = json.dumps(record, ensure_ascii=False) + "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
    return path


def read_events(path: Path) -> list[Event]:
    """Read a session log, skipping malformed lines individually.

    An unreadable file yields an empty list.
    """
    events: list[Event] = []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(parse_event(json.loads(line)))
                except (json.JSONDecodeError, SchemaError):
                    continue
    except OSError as exc:
        log.debug("Could not read session log %s: %s", path, exc)
        return []
    return events


def list_session_logs(state_dir: Path) -> list[Path]:
    state_dir = Path(state_dir)
    try:
        return sorted(p for p in state_dir.glob(f"*{LOG_SUFFIX}") if p.is_file())
    except OSError:
        return []


def load_session_logs(state_dir: Path) -> dict[str, list[Event]]:
    """Return ``{session_id: events}`` for every log file in the directory.

    The session id is the file stem; files that yield no events are still
    listed with an empty event list so callers can tell "empty" from "absent".
    """
    return {path.stem: read_events(path) for path in list_session_logs(state_dir)}
