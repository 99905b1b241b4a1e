"""Tests for the refresh loop that ties the monitor together."""

import asyncio
from datetime import timedelta
import json

import pytest

from agent_monitor.archive import ArchiveMap
from agent_monitor.config import MonitorConfig
from agent_monitor.engine import MonitorEngine, RefreshReason
from agent_monitor.notifier import TransitionKind
from agent_monitor.store import append_event

from helpers import BASE, FakeChannel, FakeWatcher, record, write_log


@pytest.fixture
def make_engine(tmp_path, state_dir):
    def factory(**kwargs):
        kwargs.setdefault("config", MonitorConfig())
        kwargs.setdefault("state_dir", state_dir)
        kwargs.setdefault("projects_dir", tmp_path / "projects")
        kwargs.setdefault("archive_map", ArchiveMap(tmp_path / "archive-map.json"))
        kwargs.setdefault("archive_base_path", "")
        kwargs.setdefault("watcher_factory", FakeWatcher)
        kwargs.setdefault("refresh_interval", 3600)
        kwargs.setdefault("now", lambda: BASE + timedelta(minutes=1))
        return MonitorEngine(**kwargs)

    return factory


class TestRefresh:
    @pytest.mark.asyncio
    async def test_payload_is_filtered_and_enriched(self, make_engine, state_dir):
        write_log(
            state_dir,
            record("session_start", session_id="busy", cwd="/work/api"),
            record("tool_use", session_id="busy", ts=BASE + timedelta(seconds=30), tool_name="Bash", tool_summary="pytest"),
        )
        # Tool-less and stale: hidden.
        write_log(state_dir, record("session_start", session_id="ghost", ts=BASE - timedelta(hours=1)))
        engine = make_engine()

        payload = await engine.refresh()

        assert [entry["id"] for entry in payload] == ["busy"]
        entry = payload[0]
        assert entry["status"] == "active"
        assert entry["summary"] == "Ran 1 command"
        assert entry["topicSummary"] == "api"
        assert entry["project"] == "api"
        assert entry["parentId"] is None
        await engine.stop()

    @pytest.mark.asyncio
    async def test_listeners_and_channels_receive_each_cycle(self, make_engine, state_dir):
        write_log(state_dir, record("session_start"))
        engine = make_engine()
        received = []
        channel = FakeChannel()
        engine.add_listener(received.append)
        engine.broadcaster.add(channel)

        await engine.refresh()
        await engine.refresh()

        assert len(received) == 2
        assert channel.sent == [received[0], received[1]]
        assert engine.cycles == 2
        await engine.stop()

    @pytest.mark.asyncio
    async def test_transitions_between_cycles(self, make_engine, state_dir):
        write_log(state_dir, record("session_start"), record("tool_use", tool_name="Read"))
        seen = []
        engine = make_engine(on_transitions=seen.append)

        await engine.refresh()
        assert seen == []

        append_event(record("tool_use", ts=BASE + timedelta(seconds=5), tool_name="Edit"), state_dir)
        await engine.refresh()

        assert len(seen) == 1
        assert [t.kind for t in seen[0]] == [TransitionKind.NEW_TOOL_ACTIVITY]
        assert seen[0][0].detail == "Edit"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_every_session_is_archived(self, make_engine, state_dir, tmp_path):
        base = tmp_path / "archive"
        write_log(state_dir, record("session_start", session_id="a"), record("tool_use", session_id="a"))
        # Hidden from the payload but still archived.
        write_log(state_dir, record("session_start", session_id="b"), record("session_end", session_id="b"))
        engine = make_engine(archive_base_path=str(base))

        await engine.refresh()

        mapping = json.loads((tmp_path / "archive-map.json").read_text(encoding="utf-8"))
        assert sorted(mapping) == ["a", "b"]
        archived = (base / "2026" / "02" / "2026-02-09-a.jsonl").read_text(encoding="utf-8")
        assert '"summary_update"' in archived
        await engine.stop()

    @pytest.mark.asyncio
    async def test_bad_log_lines_do_not_break_a_cycle(self, make_engine, state_dir):
        path = write_log(state_dir, record("session_start"))
        with path.open("a", encoding="utf-8") as handle:
            handle.write("garbage\n")
        engine = make_engine()
        assert [entry["id"] for entry in await engine.refresh()] == ["sess-1"]
        await engine.stop()


class TestConsumers:
    @pytest.mark.asyncio
    async def test_attach_sends_current_payload_immediately(self, make_engine, state_dir):
        write_log(state_dir, record("session_start"))
        engine = make_engine()
        channel = FakeChannel()

        assert await engine.attach(channel)
        assert [entry["id"] for entry in channel.sent[0]] == ["sess-1"]
        engine.detach(channel)
        assert engine.broadcaster.channel_count == 0
        await engine.stop()

    @pytest.mark.asyncio
    async def test_attach_sends_a_fresh_snapshot_not_the_last_broadcast(self, make_engine, state_dir):
        engine = make_engine()
        assert await engine.refresh() == []

        write_log(state_dir, record("session_start"))
        channel = FakeChannel()
        assert await engine.attach(channel)
        assert [entry["id"] for entry in channel.sent[0]] == ["sess-1"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_attach_rejected_when_full(self, make_engine):
        engine = make_engine(max_channels=1)
        assert await engine.attach(FakeChannel())
        assert not await engine.attach(FakeChannel())
        await engine.stop()

    @pytest.mark.asyncio
    async def test_clear_ended(self, make_engine, state_dir):
        write_log(state_dir, record("session_start", session_id="done"), record("session_end", session_id="done"))
        write_log(state_dir, record("session_start", session_id="live"))
        engine = make_engine()

        assert engine.clear_ended() == 1
        assert [s.id for s in engine.current_sessions()] == ["live"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_groups(self, make_engine, state_dir):
        write_log(state_dir, record("session_start", session_id="a", cwd="/x/api"))
        write_log(state_dir, record("session_start", session_id="b", cwd="/y/api"))
        engine = make_engine()
        groups = engine.groups()
        assert sorted(groups["api"]) == ["a", "b"]
        await engine.stop()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_an_initial_cycle(self, make_engine, state_dir):
        write_log(state_dir, record("session_start"))
        engine = make_engine()
        delivered = asyncio.Event()
        engine.add_listener(lambda payload: delivered.set())

        await engine.start()
        await asyncio.wait_for(delivered.wait(), timeout=2)

        assert engine.running
        assert engine.watcher.started == 1
        await engine.stop()
        await engine.stop()
        assert not engine.running
        assert engine.watcher.mode == "stopped"

    @pytest.mark.asyncio
    async def test_watcher_signal_triggers_a_cycle(self, make_engine, state_dir):
        engine = make_engine()
        payloads = []
        engine.add_listener(payloads.append)
        await engine.start()
        await asyncio.sleep(0.05)
        before = engine.cycles

        write_log(state_dir, record("session_start"))
        engine.watcher.on_change()
        await asyncio.sleep(0.05)

        assert engine.cycles == before + 1
        assert [entry["id"] for entry in payloads[-1]] == ["sess-1"]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_queued_triggers_are_coalesced(self, make_engine):
        engine = make_engine()
        await engine.start()
        await asyncio.sleep(0.05)
        before = engine.cycles

        for reason in (RefreshReason.TICK, RefreshReason.FILES_CHANGED, RefreshReason.CONNECT):
            engine.request_refresh(reason)
        await asyncio.sleep(0.05)

        assert engine.cycles == before + 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_requests_before_start_are_ignored(self, make_engine):
        engine = make_engine()
        engine.request_refresh(RefreshReason.TICK)
        assert engine.cycles == 0
        await engine.stop()
