"""Read user/assistant exchanges from Claude Code transcripts."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from .config import PROJECTS_DIR
from .models import Message, parse_timestamp

log = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 300


def encode_project_path(cwd: str) -> str:
    """Encode a working directory the way Claude Code names project dirs.

    e.g. ``/Users/foo/bar`` -> ``-Users-foo-bar``
    """
    if not cwd:
        return ""
    return cwd.replace("/", "-")


def find_transcript_file(session_id: str, cwd: str, projects_dir: Path = PROJECTS_DIR) -> Path | None:
    """Locate ``<projects>/<encoded cwd>/<session_id>.jsonl``.

    Falls back to scanning every project directory when the cwd-derived
    location does not exist.
    """
    if not session_id:
        return None
    projects_dir = Path(projects_dir)
    filename = f"{session_id}.jsonl"

    if cwd:
        candidate = projects_dir / encode_project_path(cwd) / filename
        if candidate.is_file():
            return candidate

    try:
        dirs = sorted(d for d in projects_dir.iterdir() if d.is_dir())
    except OSError:
        return None
    for directory in dirs:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


def _message_text(content) -> str:
    """Text of a message's content: a plain string or the joined text blocks."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text", "")
                if isinstance(text, str) and text.strip():
                    parts.append(text.strip())
        return " ".join(parts)
    return ""


def _is_tool_result(content) -> bool:
    if isinstance(content, dict):
        return content.get("type") == "tool_result"
    if isinstance(content, list) and content:
        first = content[0]
        return isinstance(first, dict) and first.get("type") == "tool_result"
    return False


def _truncate(text: str, limit: int = MAX_MESSAGE_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def extract_messages(file_path: Path) -> list[Message]:
    """Extract user/assistant text messages, oldest first."""
    messages: list[Message] = []
    with open(file_path, encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(rec, dict) or rec.get("type") not in ("user", "assistant"):
                continue
            msg = rec.get("message")
            if not isinstance(msg, dict):
                continue

            content = msg.get("content")
            if _is_tool_result(content):
                continue
            text = _message_text(content)
            if not text:
                continue

            ts = None
            if rec.get("timestamp"):
                try:
                    ts = parse_timestamp(rec["timestamp"])
                except ValueError:
                    ts = None
            role = msg.get("role") or rec["type"]
            messages.append(Message(role=role, text=_truncate(text), ts=ts))
    return messages


@dataclass
class _CacheEntry:
    path: Path
    mtime_ns: int
    messages: list[Message]


class ConversationLoader:
    """Load per-session conversations, reparsing only when a transcript changes."""

    def __init__(self, projects_dir: Path = PROJECTS_DIR):
        self.projects_dir = Path(projects_dir)
        self._cache: dict[str, _CacheEntry] = {}

    def load(self, session_id: str, cwd: str = "") -> list[Message]:
        path = find_transcript_file(session_id, cwd, self.projects_dir)
        if path is None:
            return []
        try:
            mtime_ns = path.stat().st_mtime_ns
        except OSError:
            return []

        cached = self._cache.get(session_id)
        if cached is not None and cached.path == path and cached.mtime_ns == mtime_ns:
            return cached.messages

        try:
            messages = extract_messages(path)
        except OSError as exc:
            log.debug("Could not read transcript %s: %s", path, exc)
            return []
        self._cache[session_id] = _CacheEntry(path=path, mtime_ns=mtime_ns, messages=messages)
        return messages

    def forget(self, keep_ids: set[str]) -> None:
        """Drop cache entries for sessions no longer present."""
        for session_id in [sid for sid in self._cache if sid not in keep_ids]:
            del self._cache[session_id]
