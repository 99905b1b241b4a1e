"""Builders shared by the test modules."""

from collections import deque
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path

from agent_monitor.models import Message, Session, SessionStatus, ToolEvent, parse_event

BASE = datetime(2026, 2, 9, 12, 0, tzinfo=timezone.utc)


def iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def record(event: str, session_id: str = "sess-1", ts: datetime = BASE, **fields) -> dict:
    rec = {"ts": iso(ts), "event": event, "session_id": session_id, "agent_name": "alpha"}
    rec.update(fields)
    return rec


def events(*records: dict) -> list:
    return [parse_event(rec) for rec in records]


def write_log(state_dir: Path, *records: dict) -> Path:
    """Write records as one session log (the file is named after the first record)."""
    state_dir.mkdir(parents=True, exist_ok=True)
    path = state_dir / f"{records[0]['session_id']}.jsonl"
    with path.open("a", encoding="utf-8") as handle:
        for rec in records:
            handle.write(json.dumps(rec) + "\n")
    return path


def make_session(
    session_id: str = "sess-1",
    *,
    status: SessionStatus = SessionStatus.ACTIVE,
    tools: list[str] | None = None,
    summaries: list[str] | None = None,
    last_event_at: datetime = BASE,
    cwd: str = "/work/project",
    messages: list[tuple[str, str]] | None = None,
    tool_count: int | None = None,
) -> Session:
    """A Session built directly; ``tools`` are given oldest first."""
    tools = tools or []
    summaries = summaries or [""] * len(tools)
    recent = deque(maxlen=10)
    for i, (name, summary) in enumerate(zip(tools, summaries)):
        recent.appendleft(
            ToolEvent(
                tool_name=name,
                summary=summary,
                detail=summary,
                ts=last_event_at - timedelta(seconds=2 * (len(tools) - 1 - i)),
            )
        )
    conversation = [Message(role=role, text=text, ts=BASE) for role, text in (messages or [])]
    return Session(
        id=session_id,
        name="alpha",
        status=status,
        last_event_at=last_event_at,
        cwd=cwd,
        started_at=BASE,
        tool_count=len(tools) if tool_count is None else tool_count,
        message_count=len(conversation),
        recent_tools=recent,
        conversation=deque(conversation, maxlen=20),
        opening_messages=tuple(conversation[:3]),
    )


class FakeChannel:
    """A push channel that records what it was sent."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_text(self, data):
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))


class FakeWatcher:
    """Stands in for SessionWatcher; tests trigger refreshes directly."""

    def __init__(self, directory, on_change):
        self.directory = directory
        self.on_change = on_change
        self.started = 0
        self.stopped = 0

    @property
    def mode(self):
        return "native" if self.started > self.stopped else "stopped"

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1
