"""Cached, debounced session summaries and topic titles.

A rule-based text is always available synchronously. When an LLM endpoint
is configured, an enrichment request runs in the background and its result
(or the rule-based text, if it fails) replaces the cached value; the owner
is told through ``on_update`` so it can push a fresh snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .llm import LLMClient
from .models import Session, SessionStatus

log = logging.getLogger(__name__)

# Minimum spacing between enrichment calls for one session
DEBOUNCE_SECONDS = 10.0
TOPIC_CHARS = 60

EDIT_TOOLS = ("Edit", "Write", "MultiEdit", "NotebookEdit")
READ_TOOLS = ("Read",)
SHELL_TOOLS = ("Bash",)
SEARCH_TOOLS = ("Grep", "Glob")
SPAWN_TOOLS = ("Task", "Agent")
WEB_TOOLS = ("WebSearch", "WebFetch")


def _plural(count: int, word: str, suffix: str = "s") -> str:
    return f"{count} {word}{suffix if count != 1 else ''}"


def rule_summary(session: Session) -> str:
    """Deterministic summary from recent tool activity. No network."""
    tools = list(session.recent_tools)
    if not tools:
        if session.status is SessionStatus.IDLE:
            return "Waiting for input"
        if session.status is SessionStatus.STALE:
            return "Inactive for 5+ minutes"
        if session.status is SessionStatus.ENDED:
            return "Session ended"
        return "Starting up"

    # Oldest first so file lists read in the order they were touched.
    tools.reverse()
    by_name: dict[str, list] = {}
    for tool in tools:
        by_name.setdefault(tool.tool_name, []).append(tool)

    def named(names: tuple[str, ...]) -> list:
        return [t for name in names for t in by_name.get(name, [])]

    parts = []

    edited = list(dict.fromkeys(t.summary for t in named(EDIT_TOOLS) if t.summary))
    if edited:
        shown = ", ".join(edited[:3])
        extra = f" +{len(edited) - 3}" if len(edited) > 3 else ""
        parts.append(f"editing {_plural(len(edited), 'file')} ({shown}{extra})")

    read = list(dict.fromkeys(t.summary for t in named(READ_TOOLS) if t.summary))
    if read and not edited:
        parts.append(f"reading {', '.join(read[:3])}")

    shell = named(SHELL_TOOLS)
    if shell:
        parts.append(f"ran {_plural(len(shell), 'command')}")

    searches = named(SEARCH_TOOLS)
    if searches:
        parts.append(_plural(len(searches), "search", "es"))

    spawns = named(SPAWN_TOOLS)
    if spawns:
        parts.append(_plural(len(spawns), "sub-agent"))

    web = named(WEB_TOOLS)
    if web:
        parts.append(_plural(len(web), "web request"))

    if not parts:
        return f"Using {', '.join(by_name)}"
    text = ", ".join(parts)
    return text[0].upper() + text[1:]


def rule_topic(session: Session) -> str:
    """First user message, else the project name."""
    first_user = next((m for m in session.opening_messages if m.role == "user"), None)
    if first_user is None:
        first_user = next((m for m in session.conversation if m.role == "user"), None)
    if first_user is not None:
        text = " ".join(first_user.text.split())
        if len(text) > TOPIC_CHARS:
            text = text[: TOPIC_CHARS - 3] + "..."
        return text
    if session.cwd:
        return os.path.basename(session.cwd.rstrip("/")) or session.cwd
    return "Untitled session"


@dataclass
class _CacheEntry:
    text: str
    tool_count: int
    message_count: int
    ts: float


class _EnrichedCache:
    """One cached text per session with in-flight tracking and call spacing."""

    def __init__(
        self,
        label: str,
        fallback: Callable[[Session], str],
        generate: Callable[[Session], Awaitable[str | None]],
        notify: Callable[[], None],
        clock: Callable[[], float],
        debounce: float,
    ):
        self.label = label
        self._fallback = fallback
        self._generate = generate
        self._notify = notify
        self._clock = clock
        self._debounce = debounce
        self._cache: dict[str, _CacheEntry] = {}
        self._pending: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def get(self, session: Session, enabled: bool) -> str:
        if not enabled:
            return self._fallback(session)

        cached = self._cache.get(session.id)
        if (
            cached is not None
            and cached.tool_count == session.tool_count
            and cached.message_count == session.message_count
        ):
            return cached.text

        now = self._clock()
        if session.id not in self._pending and (cached is None or now - cached.ts >= self._debounce):
            self._start(session)

        if cached is not None:
            # Counts moved on; keep the last enriched text until the next one lands.
            return cached.text
        return self._fallback(session)

    def is_pending(self, session_id: str) -> bool:
        return session_id in self._pending

    def _start(self, session: Session) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop; skipping %s enrichment for %s", self.label, session.id)
            return
        self._pending.add(session.id)
        task = loop.create_task(self._refresh(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh(self, session: Session) -> None:
        try:
            text = await self._generate(session)
        except Exception:
            log.warning("%s enrichment crashed for %s", self.label, session.id, exc_info=True)
            text = None
        finally:
            self._pending.discard(session.id)
        if not text:
            text = self._fallback(session)
        self._cache[session.id] = _CacheEntry(
            text=text,
            tool_count=session.tool_count,
            message_count=session.message_count,
            ts=self._clock(),
        )
        try:
            self._notify()
        except Exception:
            log.exception("%s update callback failed", self.label)

    def forget(self, keep_ids: set[str]) -> None:
        for session_id in [sid for sid in self._cache if sid not in keep_ids]:
            del self._cache[session_id]

    async def drain(self) -> None:
        """Wait for in-flight enrichment (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._pending.clear()


class SummaryManager:
    """Summaries and topics for every session, cached per session."""

    def __init__(
        self,
        client: LLMClient,
        *,
        on_update: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        debounce: float = DEBOUNCE_SECONDS,
    ):
        self.client = client
        self.on_update = on_update
        self._summaries = _EnrichedCache(
            "summary", rule_summary, client.generate_summary, self._notify, clock, debounce
        )
        self._topics = _EnrichedCache(
            "topic", rule_topic, client.generate_topic, self._notify, clock, debounce
        )

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update()

    def get_summary(self, session: Session) -> str:
        """Cached enriched summary, else the rule-based text (may start a refresh)."""
        return self._summaries.get(session, self.client.is_ready())

    def get_topic(self, session: Session) -> str:
        """Cached enriched topic, else the rule-based topic (may start a refresh)."""
        return self._topics.get(session, self.client.is_ready())

    def is_pending(self, session_id: str) -> bool:
        return self._summaries.is_pending(session_id) or self._topics.is_pending(session_id)

    def forget(self, keep_ids: set[str]) -> None:
        self._summaries.forget(keep_ids)
        self._topics.forget(keep_ids)

    async def drain(self) -> None:
        await self._summaries.drain()
        await self._topics.drain()

    def cancel(self) -> None:
        self._summaries.cancel()
        self._topics.cancel()
