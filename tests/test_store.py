"""Tests for the per-session event log store."""

import json

from agent_monitor.models import SessionStart, ToolUse
from agent_monitor.store import append_event, load_session_logs, read_events, session_log_path

from helpers import record, write_log


class TestAppendEvent:
    def test_creates_directory_and_appends_one_line(self, tmp_path):
        """append_event creates the log directory and writes one JSON line."""
        state_dir = tmp_path / "nested" / "sessions"
        path = append_event(record("session_start", cwd="/w"), state_dir)

        assert path == session_log_path("sess-1", state_dir)
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["event"] == "session_start"

    def test_appends_preserve_order(self, state_dir):
        append_event(record("session_start"), state_dir)
        append_event(record("tool_use", tool_name="Bash"), state_dir)

        events = read_events(session_log_path("sess-1", state_dir))
        assert [type(e) for e in events] == [SessionStart, ToolUse]


class TestReadEvents:
    def test_skips_malformed_lines_individually(self, state_dir):
        """A corrupt or unknown line is dropped without losing its neighbours."""
        path = write_log(state_dir, record("session_start"))
        with path.open("a", encoding="utf-8") as handle:
            handle.write("{not json\n")
            handle.write(json.dumps({"event": "mystery", "session_id": "sess-1", "ts": "2026-02-09T12:00:00Z"}) + "\n")
            handle.write("\n")
            handle.write(json.dumps(record("tool_use", tool_name="Read")) + "\n")

        events = read_events(path)
        assert len(events) == 2
        assert events[1].tool_name == "Read"

    def test_undecodable_line_is_skipped_alone(self, state_dir):
        """Invalid UTF-8 on one line does not hide the rest of the session."""
        path = state_dir / "sess-1.jsonl"
        with path.open("wb") as handle:
            handle.write(json.dumps(record("session_start")).encode() + b"\n")
            handle.write(b'{"ts": "x\xff\xfe"}' + b"\n")
            handle.write(json.dumps(record("tool_use", tool_name="Edit")).encode() + b"\n")

        events = read_events(path)
        assert [type(e) for e in events] == [SessionStart, ToolUse]

    def test_missing_file_is_empty(self, state_dir):
        assert read_events(state_dir / "nope.jsonl") == []


class TestLoadSessionLogs:
    def test_keys_are_file_stems(self, state_dir):
        write_log(state_dir, record("session_start", session_id="a"))
        write_log(state_dir, record("session_start", session_id="b"))
        (state_dir / "empty.jsonl").write_text("", encoding="utf-8")
        (state_dir / "notes.txt").write_text("ignored", encoding="utf-8")

        logs = load_session_logs(state_dir)
        assert sorted(logs) == ["a", "b", "empty"]
        assert logs["empty"] == []

    def test_missing_directory(self, tmp_path):
        assert load_session_logs(tmp_path / "missing") == {}
