"""Merge tool events and conversation messages into one timeline."""

from __future__ import annotations

from typing import Iterable

from .models import Message, ToolEvent, to_millis


def build_timeline(recent_tools: Iterable[ToolEvent], conversation: Iterable[Message]) -> list[dict]:
    """Timeline entries sorted newest first, matching the recent-tools order."""
    entries = []
    for tool in recent_tools or ():
        entries.append({
            "type": "tool",
            "ts": to_millis(tool.ts),
            "toolName": tool.tool_name,
            "toolSummary": tool.summary,
            "toolDetail": tool.detail,
            "toolResultBrief": tool.result_brief,
        })
    for msg in conversation or ():
        entries.append({
            "type": "user_message" if msg.role == "user" else "assistant_message",
            "ts": to_millis(msg.ts),
            "text": msg.text,
        })
    entries.sort(key=lambda e: e["ts"], reverse=True)
    return entries
