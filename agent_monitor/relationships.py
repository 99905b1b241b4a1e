"""Parent/child and project relationships between sessions."""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Sequence

from .models import Session

# Tool calls that spawn a sub-agent session
SPAWN_TOOLS = ("Task", "Agent")

SPAWN_TOLERANCE = timedelta(seconds=5)
# Assumed average time per tool call, used to estimate when a session began
ASSUMED_TOOL_SPACING = timedelta(seconds=2)


def estimated_start(session: Session):
    """Rough start time: ``last_event_at - tool_count * 2s``.

    This is a heuristic, not a recorded timestamp; bursty tool usage can
    misattribute parentage.
    """
    return session.last_event_at - session.tool_count * ASSUMED_TOOL_SPACING


def detect_parent_child(sessions: Sequence[Session]) -> dict[str, str]:
    """Map child session id -> parent session id.

    A session is a child of another when the other recorded a spawn tool call
    within 5 s of the child's estimated start. The first matching parent wins.
    """
    spawn_calls: dict[str, list] = {}
    for session in sessions:
        calls = [t.ts for t in session.recent_tools if t.tool_name in SPAWN_TOOLS]
        if calls:
            spawn_calls[session.id] = calls

    parent_map: dict[str, str] = {}
    for child in sessions:
        if child.id in parent_map:
            continue
        child_start = estimated_start(child)
        for parent_id, calls in spawn_calls.items():
            if parent_id == child.id:
                continue
            if any(abs(call_ts - child_start) < SPAWN_TOLERANCE for call_ts in calls):
                parent_map[child.id] = parent_id
                break
    return parent_map


def build_session_tree(sessions: Sequence[Session], parent_map: dict[str, str]) -> list[tuple[Session, int]]:
    """Flatten sessions into ``(session, depth)`` rows, children under their parent."""
    present = {s.id for s in sessions}
    children_of: dict[str, list[Session]] = {}
    top_level: list[Session] = []
    for session in sessions:
        parent_id = parent_map.get(session.id)
        # A child whose parent is no longer listed is shown at the top level.
        if parent_id is not None and parent_id in present:
            children_of.setdefault(parent_id, []).append(session)
        else:
            top_level.append(session)

    rows: list[tuple[Session, int]] = []
    for session in top_level:
        rows.append((session, 0))
        for child in children_of.get(session.id, []):
            rows.append((child, 1))
    return rows


def project_name(session: Session) -> str:
    if not session.cwd:
        return "unknown"
    return os.path.basename(session.cwd.rstrip("/")) or "unknown"


def group_sessions_by_project(sessions: Sequence[Session]) -> dict[str, list[Session]]:
    """Partition sessions by the base name of their working directory."""
    groups: dict[str, list[Session]] = {}
    for session in sessions:
        groups.setdefault(project_name(session), []).append(session)
    return groups
