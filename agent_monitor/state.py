"""Reconstruct live session views from hook event logs."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from itertools import islice
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .models import (
    DEFAULT_MAX_MESSAGES,
    DEFAULT_MAX_RECENT_TOOLS,
    OPENING_MESSAGES,
    Event,
    Message,
    Session,
    SessionEnd,
    SessionStart,
    SessionStatus,
    Stop,
    ToolEvent,
    ToolUse,
)
from .store import list_session_logs, load_session_logs, read_events

log = logging.getLogger(__name__)

STALE_THRESHOLD = timedelta(minutes=5)

# (session_id, cwd) -> messages, oldest first
ConversationSource = Callable[[str, str], Sequence[Message]]


def derive_status(events: Sequence[Event], now: datetime) -> SessionStatus | None:
    """Status is a pure function of the last event's kind and its age."""
    if not events:
        return None
    last = events[-1]
    if isinstance(last, SessionEnd):
        return SessionStatus.ENDED
    if isinstance(last, Stop):
        return SessionStatus.IDLE
    stale = now - last.ts >= STALE_THRESHOLD
    if isinstance(last, ToolUse):
        return SessionStatus.STALE if stale else SessionStatus.ACTIVE
    # session_start
    return SessionStatus.STALE if stale else SessionStatus.IDLE


def build_session(
    events: Sequence[Event],
    now: datetime | None = None,
    *,
    max_recent_tools: int = DEFAULT_MAX_RECENT_TOOLS,
    conversation: Sequence[Message] = (),
) -> Session | None:
    """Build a Session view from one session's ordered events.

    Returns None for an empty event list.
    """
    if not events:
        return None
    now = now or datetime.now(timezone.utc)

    first = events[0]
    start = next((e for e in events if isinstance(e, SessionStart)), None)

    recent_tools: deque[ToolEvent] = deque(maxlen=max(1, max_recent_tools))
    tool_count = 0
    for event in events:
        if not isinstance(event, ToolUse):
            continue
        tool_count += 1
        # Newest first: each later tool goes to the front, the oldest falls off the end.
        recent_tools.appendleft(
            ToolEvent(
                tool_name=event.tool_name,
                summary=event.tool_summary,
                detail=event.tool_detail,
                result_brief=event.tool_result_brief,
                ts=event.ts,
            )
        )

    status = derive_status(events, now)
    return Session(
        id=first.session_id,
        name=first.agent_name or "unknown",
        cwd=start.cwd if start else "",
        model=start.model if start else "unknown",
        status=status,
        started_at=start.ts if start else first.ts,
        last_event_at=events[-1].ts,
        tool_count=tool_count,
        message_count=len(conversation),
        recent_tools=recent_tools,
        conversation=deque(conversation, maxlen=DEFAULT_MAX_MESSAGES),
        opening_messages=tuple(islice(conversation, OPENING_MESSAGES)),
        tmux_pane=start.tmux_pane if start else "",
        tmux_window=start.tmux_window if start else "",
    )


def is_visible(session: Session) -> bool:
    """Hide tool-less sessions only once they are ended or stale.

    A just-opened session that has not run a tool yet stays visible.
    """
    if session.tool_count > 0:
        return True
    return session.status not in (SessionStatus.ENDED, SessionStatus.STALE)


def filter_visible(sessions: Iterable[Session]) -> list[Session]:
    return [s for s in sessions if is_visible(s)]


def build_sessions(
    logs: dict[str, list[Event]],
    now: datetime | None = None,
    *,
    max_recent_tools: int = DEFAULT_MAX_RECENT_TOOLS,
    conversation_source: ConversationSource | None = None,
) -> list[Session]:
    """Reconstruct every session, most recently active first."""
    now = now or datetime.now(timezone.utc)
    sessions: list[Session] = []
    for events in logs.values():
        if not events:
            continue
        conversation: Sequence[Message] = ()
        if conversation_source is not None:
            start = next((e for e in events if isinstance(e, SessionStart)), None)
            conversation = conversation_source(events[0].session_id, start.cwd if start else "")
        session = build_session(
            events,
            now,
            max_recent_tools=max_recent_tools,
            conversation=conversation,
        )
        if session is not None:
            sessions.append(session)
    sessions.sort(key=lambda s: s.last_event_at, reverse=True)
    return sessions


def load_all_sessions(
    state_dir: Path,
    now: datetime | None = None,
    *,
    max_recent_tools: int = DEFAULT_MAX_RECENT_TOOLS,
    conversation_source: ConversationSource | None = None,
) -> list[Session]:
    """Load and reconstruct all sessions from the log directory."""
    return build_sessions(
        load_session_logs(state_dir),
        now,
        max_recent_tools=max_recent_tools,
        conversation_source=conversation_source,
    )


def clear_ended_sessions(state_dir: Path, now: datetime | None = None) -> int:
    """Remove log files of ended sessions. Returns the number removed."""
    now = now or datetime.now(timezone.utc)
    cleared = 0
    for path in list_session_logs(state_dir):
        if derive_status(read_events(path), now) is not SessionStatus.ENDED:
            continue
        try:
            path.unlink()
            cleared += 1
        except FileNotFoundError:
            # Already removed by another process.
            continue
        except OSError as exc:
            log.warning("Could not remove ended session log %s: %s", path, exc)
    if cleared:
        log.info("Cleared %d ended session log(s)", cleared)
    return cleared
