"""Durable, date-organized archive of every session event.

Archive files live at ``<base>/YYYY/MM/YYYY-MM-DD-<short id>.jsonl``. The
file for a session is chosen once, from the session's start timestamp, and
recorded in a shared mapping file so later appends (possibly after midnight,
possibly from another process) land in the same file.

Archival is best-effort: every filesystem failure is logged at debug level
and absorbed so it can never hold up reconstruction or distribution.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import archive_map_path, config_path, load_config
from .models import EVENT_TYPES, Event, Session, SessionStart, parse_timestamp

log = logging.getLogger(__name__)

BASE_PATH_CACHE_SECONDS = 30.0
ARCHIVE_VERSION = 1


def normalize_archive_path(raw: str) -> str:
    """Clean a configured archive path.

    Strips whitespace and one pair of matching wrapping quotes (a common
    copy-paste mistake), then expands a leading ``~``.
    """
    value = (raw or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1].strip()
    if not value:
        return ""
    if value.startswith("~"):
        value = os.path.expanduser(value)
    return value


def get_archive_base_path(path: Path | None = None) -> str:
    """Read ``archivePath`` from the config file. Empty when not configured."""
    try:
        return normalize_archive_path(load_config(path or config_path()).archive_path)
    except Exception as exc:
        log.debug("Could not resolve archive base path: %s", exc)
        return ""


def short_session_id(session_id: str) -> str:
    return session_id.replace("-", "")[:8]


def compute_archive_path(base_path: str | Path, session_id: str, when: datetime) -> Path:
    """``base/YYYY/MM/YYYY-MM-DD-<short id>.jsonl`` for the given start time."""
    day = when.strftime("%Y-%m-%d")
    filename = f"{day}-{short_session_id(session_id)}.jsonl"
    return Path(base_path) / when.strftime("%Y") / when.strftime("%m") / filename


def append_to_archive(file_path: Path, entry: dict) -> bool:
    """Append one JSON line, creating parent directories. Never raises."""
    try:
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        return True
    except (OSError, TypeError, ValueError) as exc:
        log.debug("Archive append to %s failed: %s", file_path, exc)
        return False


class ArchiveMap:
    """The shared ``session_id -> archive file`` table.

    Rewritten as a whole through a temp file and ``os.replace`` so a crash
    mid-write never leaves a truncated mapping. Concurrent writers are not
    locked against each other: the mapping is re-read right before each
    write and the last writer wins.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else archive_map_path()

    def load(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def resolve(self, session_id: str) -> Path | None:
        value = self.load().get(session_id)
        return Path(value) if value else None

    def assign(self, session_id: str, file_path: Path) -> bool:
        """Record the archive file for a session. Returns False on failure."""
        mapping = self.load()
        mapping[session_id] = str(file_path)
        return self._save(mapping)

    def _save(self, mapping: dict[str, str]) -> bool:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(mapping, indent=2) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            return True
        except OSError as exc:
            log.debug("Archive map write to %s failed: %s", self.path, exc)
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            return False


def _metadata_entry(start: SessionStart) -> dict:
    return {
        "ts": start.raw.get("ts") or start.ts.isoformat(),
        "event": "archive_metadata",
        "session_id": start.session_id,
        "agent_name": start.agent_name,
        "model": start.model,
        "cwd": start.cwd,
        "archive_version": ARCHIVE_VERSION,
    }


def _event_record(event: Event) -> dict:
    if event.raw:
        return event.raw
    return {"ts": event.ts.isoformat(), "event": event.kind.value, "session_id": event.session_id}


def init_archive(base_path: str | Path, start: SessionStart, archive_map: ArchiveMap) -> Path | None:
    """Create a session's archive file and record it in the mapping.

    Writes an ``archive_metadata`` record followed by the ``session_start``
    record. Returns the archive path, or None when archiving is off.
    """
    if not base_path:
        return None
    file_path = compute_archive_path(base_path, start.session_id, start.ts)
    append_to_archive(file_path, _metadata_entry(start))
    append_to_archive(file_path, _event_record(start))
    archive_map.assign(start.session_id, file_path)
    return file_path


def archive_event(
    session_id: str,
    record: dict,
    *,
    archive_map: ArchiveMap | None = None,
    base_path: str | None = None,
) -> bool:
    """Append a record to an already-mapped session's archive (hook side).

    No-op when archiving is not configured or the session has no mapping.
    """
    base = base_path if base_path is not None else get_archive_base_path()
    if not base:
        return False
    file_path = (archive_map or ArchiveMap()).resolve(session_id)
    if file_path is None:
        return False
    return append_to_archive(file_path, record)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class _SyncState:
    file_path: Path
    events_archived: int = 0
    messages_archived: int = 0
    last_summary: str = ""
    last_topic: str = ""
    last_event_ts: datetime | None = None


def _scan_archive(file_path: Path) -> _SyncState:
    """Rebuild sync progress from an existing archive file.

    Counts hook event and conversation records and keeps the latest summary
    and topic text, so a restarted process appends only what is missing.
    """
    state = _SyncState(file_path=Path(file_path))
    try:
        with open(file_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(rec, dict):
                    continue
                kind = rec.get("event")
                if kind in EVENT_TYPES:
                    state.events_archived += 1
                    try:
                        state.last_event_ts = parse_timestamp(rec.get("ts"))
                    except ValueError:
                        pass
                elif kind == "conversation_message":
                    state.messages_archived += 1
                elif kind == "summary_update":
                    state.last_summary = str(rec.get("summary") or "")
                elif kind == "topic_update":
                    state.last_topic = str(rec.get("topic") or "")
    except OSError as exc:
        log.debug("Could not scan archive %s: %s", file_path, exc)
    return state


def count_archived_events(file_path: Path) -> int:
    """Number of hook event records already present in an archive file."""
    return _scan_archive(file_path).events_archived


def _first_unarchived(events: list[Event], state: _SyncState) -> int:
    """Index of the first log event the archive does not hold yet."""
    cursor = state.events_archived
    if state.last_event_ts is None:
        return cursor if cursor <= len(events) else 0
    if 0 < cursor <= len(events) and events[cursor - 1].ts == state.last_event_ts:
        return cursor
    # Restarted, or the log was cleared under the same id: everything up to
    # the last archived timestamp is already there.
    return sum(1 for e in events if e.ts <= state.last_event_ts)


class ArchiveSyncer:
    """Bring each session's archive up to date once per refresh cycle.

    Appends log events not archived yet, new conversation messages, and
    summary/topic text whenever it changes. Owns the 30 s cache of the
    configured base path.
    """

    def __init__(
        self,
        archive_map: ArchiveMap | None = None,
        *,
        config_file: Path | None = None,
        base_path: str | None = None,
        cache_seconds: float = BASE_PATH_CACHE_SECONDS,
    ):
        self.archive_map = archive_map or ArchiveMap()
        self._config_file = config_file
        self._fixed_base_path = base_path
        self._cache_seconds = cache_seconds
        self._cached_base_path: str | None = None
        self._cache_ts = 0.0
        self._state: dict[str, _SyncState] = {}

    def base_path(self) -> str:
        if self._fixed_base_path is not None:
            return normalize_archive_path(self._fixed_base_path)
        now = time.monotonic()
        if self._cached_base_path is not None and now - self._cache_ts < self._cache_seconds:
            return self._cached_base_path
        self._cached_base_path = get_archive_base_path(self._config_file)
        self._cache_ts = now
        return self._cached_base_path

    def sync(
        self,
        session: Session,
        events: list[Event],
        conversation: list | None = None,
        summary: str = "",
        topic: str = "",
    ) -> None:
        """Archive whatever is new for one session. Never raises."""
        try:
            self._sync(session, events, conversation or [], summary, topic)
        except Exception:
            log.debug("Archive sync failed for %s", session.id, exc_info=True)

    def _sync(self, session: Session, events: list[Event], conversation: list, summary: str, topic: str) -> None:
        base = self.base_path()
        if not base or not events:
            return

        state = self._state.get(session.id)
        if state is None:
            state = self._open(session, events, base)
            if state is None:
                return
            self._state[session.id] = state

        for event in events[_first_unarchived(events, state):]:
            append_to_archive(state.file_path, _event_record(event))
        state.events_archived = len(events)
        state.last_event_ts = events[-1].ts

        if len(conversation) > state.messages_archived:
            for msg in conversation[state.messages_archived:]:
                append_to_archive(state.file_path, {
                    "ts": msg.ts.isoformat() if msg.ts else _now_iso(),
                    "event": "conversation_message",
                    "session_id": session.id,
                    "role": msg.role or "unknown",
                    "text": msg.text,
                })
            state.messages_archived = len(conversation)

        if summary and summary != state.last_summary:
            append_to_archive(state.file_path, {
                "ts": _now_iso(),
                "event": "summary_update",
                "session_id": session.id,
                "summary": summary,
            })
            state.last_summary = summary

        if topic and topic != state.last_topic:
            append_to_archive(state.file_path, {
                "ts": _now_iso(),
                "event": "topic_update",
                "session_id": session.id,
                "topic": topic,
            })
            state.last_topic = topic

    def _open(self, session: Session, events: list[Event], base: str) -> _SyncState | None:
        mapped = self.archive_map.resolve(session.id)
        if mapped is not None:
            # Resume after a restart instead of re-archiving from the start.
            return _scan_archive(mapped)

        start = next((e for e in events if isinstance(e, SessionStart)), None)
        if start is not None:
            file_path = init_archive(base, start, self.archive_map)
            state = _SyncState(file_path=file_path)
            # init_archive already wrote the session_start record.
            if events[0] is start:
                state.events_archived = 1
                state.last_event_ts = start.ts
            return state

        # No session_start in the log (hook missed it): date from the first event.
        file_path = compute_archive_path(base, session.id, events[0].ts)
        if not self.archive_map.assign(session.id, file_path):
            return None
        return _SyncState(file_path=file_path)

    def forget(self, keep_ids: set[str]) -> None:
        for session_id in [sid for sid in self._state if sid not in keep_ids]:
            del self._state[session_id]
