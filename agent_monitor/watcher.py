"""Detect changes in the session log directory.

Uses a watchdog observer (inotify/FSEvents/kqueue) when it can be started
and falls back to mtime polling otherwise. Either way the owner receives a
single coalesced callback on its asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.3
POLL_INTERVAL_SECONDS = 1.0
# How often a running observer is checked for liveness
OBSERVER_CHECK_SECONDS = 5.0


class _LogDirHandler(FileSystemEventHandler):
    """Forward every directory event to a thread-safe callback."""

    def __init__(self, on_event: Callable[[], None]):
        super().__init__()
        self._on_event = on_event

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._on_event()


class SessionWatcher:
    """Emit ``on_change()`` whenever the log directory's contents change."""

    def __init__(
        self,
        directory: Path,
        on_change: Callable[[], None],
        *,
        debounce: float = DEBOUNCE_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.directory = Path(directory)
        self._on_change = on_change
        self._debounce = debounce
        self._poll_interval = poll_interval
        self._observer_factory = observer_factory

        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._check_handle: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task | None = None
        self._last_mtimes: dict[str, int] = {}
        self._running = False

    @property
    def mode(self) -> str:
        if not self._running:
            return "stopped"
        if self._poll_task is not None:
            return "polling"
        return "native"

    def start(self) -> None:
        """Start watching. Must be called from a running event loop."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._running = True
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.warning("Could not create log directory %s: %s", self.directory, exc)

        if self._start_observer():
            self._schedule_observer_check()
        else:
            self._start_polling()

    def stop(self) -> None:
        """Stop watching and cancel every pending handle. Safe to call repeatedly."""
        self._running = False
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._check_handle is not None:
            self._check_handle.cancel()
            self._check_handle = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self._stop_observer()

    # --- native notification ---

    def _start_observer(self) -> bool:
        try:
            observer = self._observer_factory()
            observer.schedule(_LogDirHandler(self._on_observer_event), str(self.directory), recursive=False)
            observer.start()
        except Exception as exc:
            log.warning("File watcher unavailable for %s (%s); falling back to polling", self.directory, exc)
            return False
        self._observer = observer
        log.debug("Watching %s with %s", self.directory, type(observer).__name__)
        return True

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=1.0)
        except RuntimeError as exc:
            # join() on a thread that never started
            log.debug("Observer shutdown: %s", exc)

    def _on_observer_event(self) -> None:
        # Runs on the observer thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._debounced_emit)
        except RuntimeError:
            # Loop closed between the check and the call.
            pass

    def _debounced_emit(self) -> None:
        if not self._running:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(self._debounce, self._emit)

    def _schedule_observer_check(self) -> None:
        self._check_handle = self._loop.call_later(OBSERVER_CHECK_SECONDS, self._check_observer)

    def _check_observer(self) -> None:
        self._check_handle = None
        if not self._running or self._observer is None:
            return
        if self._observer.is_alive():
            self._schedule_observer_check()
            return
        log.warning("File watcher for %s died; falling back to polling", self.directory)
        self._stop_observer()
        self._start_polling()
        # Anything written while the observer was down would otherwise go unseen.
        self._emit()

    # --- polling fallback ---

    def _start_polling(self) -> None:
        if self._poll_task is not None:
            return
        self._last_mtimes = self._snapshot()
        self._poll_task = self._loop.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._poll_interval)
            if self.poll_once():
                self._emit()

    def poll_once(self) -> bool:
        """Compare current mtimes with the previous poll. True when anything changed."""
        current = self._snapshot()
        changed = current != self._last_mtimes
        self._last_mtimes = current
        return changed

    def _snapshot(self) -> dict[str, int]:
        mtimes: dict[str, int] = {}
        try:
            entries = list(self.directory.glob("*.jsonl"))
        except OSError:
            return mtimes
        for path in entries:
            try:
                mtimes[path.name] = path.stat().st_mtime_ns
            except OSError:
                # Removed between listing and stat.
                continue
        return mtimes

    def _emit(self) -> None:
        self._debounce_handle = None
        if not self._running:
            return
        try:
            self._on_change()
        except Exception:
            log.exception("Change callback failed")
