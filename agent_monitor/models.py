"""Dataclasses for hook events and reconstructed session views."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Union


class EventKind(str, Enum):
    SESSION_START = "session_start"
    TOOL_USE = "tool_use"
    STOP = "stop"
    SESSION_END = "session_end"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    STALE = "stale"
    ENDED = "ended"


class SchemaError(ValueError):
    """Raised when a log record does not match any event kind."""


def parse_timestamp(value: str) -> datetime:
    """Parse ISO 8601 timestamps, including Zulu suffixes, as aware UTC datetimes."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"invalid timestamp: {value!r}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_millis(value: datetime | None) -> int:
    if value is None:
        return 0
    return int(value.timestamp() * 1000)


def _str_field(rec: dict, key: str, default: str = "") -> str:
    value = rec.get(key)
    if value is None:
        return default
    return str(value)


@dataclass(frozen=True)
class _BaseEvent:
    ts: datetime
    session_id: str
    agent_name: str = ""
    # Original record as written by the hook, kept for archival.
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class SessionStart(_BaseEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_START
    cwd: str = ""
    model: str = "unknown"
    source: str = ""
    tmux_pane: str = ""
    tmux_window: str = ""

    @classmethod
    def from_record(cls, rec: dict, ts: datetime) -> SessionStart:
        return cls(
            ts=ts,
            session_id=rec["session_id"],
            agent_name=_str_field(rec, "agent_name"),
            raw=rec,
            cwd=_str_field(rec, "cwd"),
            model=_str_field(rec, "model", "unknown") or "unknown",
            source=_str_field(rec, "source"),
            tmux_pane=_str_field(rec, "tmux_pane"),
            tmux_window=_str_field(rec, "tmux_window"),
        )


@dataclass(frozen=True)
class ToolUse(_BaseEvent):
    kind: ClassVar[EventKind] = EventKind.TOOL_USE
    tool_name: str = "unknown"
    tool_summary: str = ""
    tool_detail: str = ""
    tool_result_brief: str = ""

    @classmethod
    def from_record(cls, rec: dict, ts: datetime) -> ToolUse:
        return cls(
            ts=ts,
            session_id=rec["session_id"],
            agent_name=_str_field(rec, "agent_name"),
            raw=rec,
            tool_name=_str_field(rec, "tool_name", "unknown") or "unknown",
            tool_summary=_str_field(rec, "tool_summary"),
            tool_detail=_str_field(rec, "tool_detail"),
            tool_result_brief=_str_field(rec, "tool_result_brief"),
        )


@dataclass(frozen=True)
class Stop(_BaseEvent):
    kind: ClassVar[EventKind] = EventKind.STOP

    @classmethod
    def from_record(cls, rec: dict, ts: datetime) -> Stop:
        return cls(
            ts=ts,
            session_id=rec["session_id"],
            agent_name=_str_field(rec, "agent_name"),
            raw=rec,
        )


@dataclass(frozen=True)
class SessionEnd(_BaseEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_END
    reason: str = "unknown"

    @classmethod
    def from_record(cls, rec: dict, ts: datetime) -> SessionEnd:
        return cls(
            ts=ts,
            session_id=rec["session_id"],
            agent_name=_str_field(rec, "agent_name"),
            raw=rec,
            reason=_str_field(rec, "reason", "unknown") or "unknown",
        )


Event = Union[SessionStart, ToolUse, Stop, SessionEnd]

EVENT_TYPES: dict[str, type] = {
    EventKind.SESSION_START.value: SessionStart,
    EventKind.TOOL_USE.value: ToolUse,
    EventKind.STOP.value: Stop,
    EventKind.SESSION_END.value: SessionEnd,
}


def parse_event(rec: dict) -> Event:
    """Convert one decoded log record into its event variant.

    Raises SchemaError when the record lacks the common required fields or
    names an unknown event kind.
    """
    if not isinstance(rec, dict):
        raise SchemaError("record is not an object")
    event_cls = EVENT_TYPES.get(rec.get("event"))
    if event_cls is None:
        raise SchemaError(f"unknown event kind: {rec.get('event')!r}")
    session_id = rec.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        raise SchemaError("missing session_id")
    try:
        ts = parse_timestamp(rec.get("ts"))
    except ValueError as exc:
        raise SchemaError(str(exc)) from exc
    return event_cls.from_record(rec, ts)


@dataclass(frozen=True)
class ToolEvent:
    tool_name: str
    summary: str
    detail: str
    ts: datetime
    result_brief: str = ""

    def to_dict(self) -> dict:
        return {
            "toolName": self.tool_name,
            "toolSummary": self.summary,
            "toolDetail": self.detail,
            "toolResultBrief": self.result_brief,
            "ts": to_millis(self.ts),
        }


@dataclass(frozen=True)
class Message:
    role: str
    text: str
    ts: datetime | None = None

    def to_dict(self) -> dict:
        return {"role": self.role, "text": self.text, "ts": to_millis(self.ts)}


DEFAULT_MAX_RECENT_TOOLS = 10
DEFAULT_MAX_MESSAGES = 20
OPENING_MESSAGES = 3


@dataclass
class Session:
    id: str
    name: str
    status: SessionStatus
    last_event_at: datetime
    cwd: str = ""
    model: str = "unknown"
    started_at: datetime | None = None
    tool_count: int = 0
    message_count: int = 0
    recent_tools: deque[ToolEvent] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_MAX_RECENT_TOOLS)
    )
    conversation: deque[Message] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_MAX_MESSAGES)
    )
    opening_messages: tuple[Message, ...] = ()
    tmux_pane: str = ""
    tmux_window: str = ""

    @property
    def last_tool(self) -> ToolEvent | None:
        return self.recent_tools[0] if self.recent_tools else None

    def to_dict(self) -> dict:
        last = self.last_tool
        return {
            "id": self.id,
            "name": self.name,
            "cwd": self.cwd,
            "model": self.model,
            "status": self.status.value,
            "lastTool": f"{last.tool_name} {last.summary}".strip() if last else None,
            "lastEventAt": to_millis(self.last_event_at),
            "startedAt": to_millis(self.started_at),
            "toolCount": self.tool_count,
            "messageCount": self.message_count,
            "recentTools": [t.to_dict() for t in self.recent_tools],
            "conversation": [m.to_dict() for m in self.conversation],
            "tmuxPane": self.tmux_pane,
            "tmuxWindow": self.tmux_window,
        }
