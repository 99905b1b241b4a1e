"""The session state engine: one refresh loop feeding every consumer.

All session reconstruction happens in a single drain task on one asyncio
event loop. Watcher signals, the auto-refresh tick, finished enrichment
calls and consumer connects only enqueue a trigger; queued triggers are
coalesced and each cycle runs to completion before the next starts, so the
in-memory caches need no locking.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

import httpx

from . import config as config_module
from .archive import ArchiveMap, ArchiveSyncer
from .config import PROJECTS_DIR, MonitorConfig, load_config
from .distribution import MAX_CHANNELS, Broadcaster, Channel
from .llm import LLMClient
from .models import Event, Session
from .notifier import Transition, detect_transitions, notify_transitions
from .relationships import detect_parent_child, group_sessions_by_project, project_name
from .state import build_sessions, clear_ended_sessions, filter_visible
from .store import load_session_logs
from .summarizer import SummaryManager
from .transcript import ConversationLoader
from .watcher import SessionWatcher

log = logging.getLogger(__name__)

AUTO_REFRESH_SECONDS = 5.0


class RefreshReason(str, Enum):
    STARTUP = "startup"
    FILES_CHANGED = "files_changed"
    TICK = "tick"
    SUMMARY_UPDATED = "summary_updated"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CLEARED = "cleared"


class MonitorEngine:
    """Owns all per-process monitor state and the refresh loop."""

    def __init__(
        self,
        config: MonitorConfig | None = None,
        *,
        state_dir: Path | None = None,
        projects_dir: Path = PROJECTS_DIR,
        archive_map: ArchiveMap | None = None,
        archive_base_path: str | None = None,
        llm_transport: httpx.AsyncBaseTransport | None = None,
        refresh_interval: float = AUTO_REFRESH_SECONDS,
        max_channels: int = MAX_CHANNELS,
        watcher_factory: Callable[..., SessionWatcher] = SessionWatcher,
        on_transitions: Callable[[list[Transition]], None] | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.config = config or load_config()
        self.state_dir = Path(state_dir) if state_dir is not None else config_module.state_dir()
        self.refresh_interval = refresh_interval
        self.on_transitions = on_transitions
        self._now = now or (lambda: datetime.now(timezone.utc))

        self.conversations = ConversationLoader(projects_dir)
        self.llm = LLMClient(self.config, transport=llm_transport)
        self.summaries = SummaryManager(
            self.llm, on_update=lambda: self.request_refresh(RefreshReason.SUMMARY_UPDATED)
        )
        self.archiver = ArchiveSyncer(archive_map, base_path=archive_base_path)
        self.broadcaster = Broadcaster(max_channels)
        self.watcher = watcher_factory(
            self.state_dir, lambda: self.request_refresh(RefreshReason.FILES_CHANGED)
        )

        self._previous: list[Session] = []
        self._queue: asyncio.Queue[RefreshReason] | None = None
        self._runner: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._cycles = 0

    # --- lifecycle ---

    @property
    def running(self) -> bool:
        return self._runner is not None

    @property
    def cycles(self) -> int:
        return self._cycles

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self.watcher.start()
        self._runner = asyncio.create_task(self._run())
        self._ticker = asyncio.create_task(self._tick())
        log.info("Monitoring %s (watcher: %s)", self.state_dir, self.watcher.mode)
        self.request_refresh(RefreshReason.STARTUP)

    async def stop(self) -> None:
        """Stop the loop, the watcher and all timers. Safe to call repeatedly."""
        self.watcher.stop()
        tasks = [t for t in (self._ticker, self._runner) if t is not None]
        self._ticker = None
        self._runner = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.summaries.cancel()
        await self.llm.aclose()
        self._queue = None

    def request_refresh(self, reason: RefreshReason) -> None:
        """Queue a refresh cycle. Ignored while the engine is not running."""
        if self._queue is None:
            return
        self._queue.put_nowait(reason)

    async def _run(self) -> None:
        while True:
            reason = await self._queue.get()
            reasons = {reason}
            # Coalesce bursts of triggers into one cycle.
            while not self._queue.empty():
                reasons.add(self._queue.get_nowait())
            log.debug("Refresh cycle (%s)", ", ".join(sorted(r.value for r in reasons)))
            try:
                await self.refresh()
            except Exception:
                # Skip this cycle; the next trigger retries from the logs.
                log.exception("Refresh cycle failed")

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            self.request_refresh(RefreshReason.TICK)

    # --- snapshot ---

    def _load(self) -> tuple[dict[str, list[Event]], list[Session]]:
        logs = load_session_logs(self.state_dir)
        sessions = build_sessions(
            logs,
            self._now(),
            max_recent_tools=self.config.max_recent_tools,
            conversation_source=self.conversations.load,
        )
        return logs, sessions

    def current_sessions(self) -> list[Session]:
        """Every reconstructed session (visible or not), newest first."""
        return self._load()[1]

    def _enrich(self, visible: list[Session]) -> list[dict]:
        parents = detect_parent_child(visible)
        payload = []
        for session in visible:
            entry = session.to_dict()
            entry["summary"] = self.summaries.get_summary(session)
            entry["topicSummary"] = self.summaries.get_topic(session)
            entry["parentId"] = parents.get(session.id)
            entry["project"] = project_name(session)
            payload.append(entry)
        return payload

    def build_payload(self) -> list[dict]:
        """The filtered, enriched session list without side effects on the archive."""
        return self._enrich(filter_visible(self.current_sessions()))

    def groups(self) -> dict[str, list[str]]:
        visible = filter_visible(self.current_sessions())
        return {
            project: [s.id for s in members]
            for project, members in group_sessions_by_project(visible).items()
        }

    # --- refresh cycle ---

    async def refresh(self) -> list[dict]:
        """Run one full cycle: reconstruct, enrich, archive, diff, distribute."""
        logs, sessions = self._load()
        visible = filter_visible(sessions)
        payload = self._enrich(visible)

        events_by_id = {events[0].session_id: events for events in logs.values() if events}
        texts = {entry["id"]: (entry["summary"], entry["topicSummary"]) for entry in payload}
        for session in sessions:
            summary, topic = texts.get(session.id, ("", ""))
            self.archiver.sync(
                session,
                events_by_id.get(session.id, []),
                self.conversations.load(session.id, session.cwd),
                summary,
                topic,
            )

        transitions = detect_transitions(self._previous, sessions)
        self._previous = sessions
        if transitions:
            self._handle_transitions(transitions)

        live_ids = {s.id for s in sessions}
        self.summaries.forget(live_ids)
        self.conversations.forget(live_ids)
        self.archiver.forget(live_ids)

        self._cycles += 1
        await self.broadcaster.broadcast(payload)
        return payload

    def _handle_transitions(self, transitions: list[Transition]) -> None:
        for transition in transitions:
            log.info(
                "Session %s (%s): %s%s",
                transition.session.name,
                transition.session.id,
                transition.kind.value,
                f" [{transition.detail}]" if transition.detail else "",
            )
        if self.config.notifications:
            notify_transitions(transitions)
        if self.on_transitions is not None:
            try:
                self.on_transitions(transitions)
            except Exception:
                log.exception("Transition callback failed")

    # --- consumers ---

    async def attach(self, channel: Channel) -> bool:
        """Register a push channel and send it the current payload immediately."""
        if not self.broadcaster.add(channel):
            return False
        if not await self.broadcaster.send_to(channel, self.build_payload()):
            return False
        self.request_refresh(RefreshReason.CONNECT)
        return True

    def detach(self, channel: Channel) -> None:
        self.broadcaster.remove(channel)
        self.request_refresh(RefreshReason.DISCONNECT)

    def add_listener(self, listener: Callable[[list], None]) -> None:
        """Local consumer: called synchronously with each payload."""
        self.broadcaster.add_listener(listener)

    def clear_ended(self) -> int:
        cleared = clear_ended_sessions(self.state_dir, self._now())
        self.request_refresh(RefreshReason.CLEARED)
        return cleared
