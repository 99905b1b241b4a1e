"""Detect notification-worthy session transitions and raise desktop notifications."""

from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .models import Session, SessionStatus

log = logging.getLogger(__name__)


class TransitionKind(str, Enum):
    SESSION_END = "session_end"
    BECAME_IDLE = "became_idle"
    BECAME_STALE = "became_stale"
    NEW_TOOL_ACTIVITY = "new_tool_activity"
    NEW_MESSAGE = "new_message"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    session: Session
    detail: str = ""


def detect_transitions(previous: Iterable[Session], current: Iterable[Session]) -> list[Transition]:
    """Diff two snapshots. Sessions missing from ``previous`` are skipped.

    Detectable transitions:
    - session_end: active/idle -> ended
    - became_idle: active -> idle
    - became_stale: active -> stale
    - new_tool_activity: tool count went up (detail is the latest tool name)
    - new_message: message count went up
    """
    if previous is None or current is None:
        return []
    before = {s.id: s for s in previous}
    transitions: list[Transition] = []

    for cur in current:
        old = before.get(cur.id)
        if old is None:
            continue

        if old.status in (SessionStatus.ACTIVE, SessionStatus.IDLE) and cur.status is SessionStatus.ENDED:
            transitions.append(Transition(TransitionKind.SESSION_END, cur))
        if old.status is SessionStatus.ACTIVE and cur.status is SessionStatus.IDLE:
            transitions.append(Transition(TransitionKind.BECAME_IDLE, cur))
        if old.status is SessionStatus.ACTIVE and cur.status is SessionStatus.STALE:
            transitions.append(Transition(TransitionKind.BECAME_STALE, cur))

        if cur.tool_count > old.tool_count:
            latest = cur.last_tool
            transitions.append(
                Transition(TransitionKind.NEW_TOOL_ACTIVITY, cur, latest.tool_name if latest else "")
            )
        if cur.message_count > old.message_count:
            transitions.append(Transition(TransitionKind.NEW_MESSAGE, cur))

    return transitions


# Only these are worth interrupting the user for.
NOTIFY_KINDS = {
    TransitionKind.SESSION_END: "Session ended",
    TransitionKind.BECAME_IDLE: "Waiting for input",
    TransitionKind.BECAME_STALE: "No activity for 5 minutes",
}


def notify(title: str, message: str) -> bool:
    """Show a macOS desktop notification via osascript. No-op elsewhere."""
    if sys.platform != "darwin":
        return False
    safe_title = (title or "").replace("\\", "\\\\").replace('"', '\\"')
    safe_msg = (message or "").replace("\\", "\\\\").replace('"', '\\"')
    script = f'display notification "{safe_msg}" with title "{safe_title}"'
    try:
        subprocess.run(["osascript", "-e", script], timeout=3, check=False, capture_output=True)
    except (OSError, subprocess.SubprocessError) as exc:
        log.debug("Desktop notification failed: %s", exc)
        return False
    return True


def notify_transitions(transitions: Iterable[Transition]) -> int:
    """Raise a desktop notification for each status transition. Returns the count sent."""
    sent = 0
    for transition in transitions:
        label = NOTIFY_KINDS.get(transition.kind)
        if label is None:
            continue
        if notify(f"agent-monitor: {transition.session.name}", label):
            sent += 1
    return sent
