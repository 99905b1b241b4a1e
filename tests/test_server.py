"""Tests for the HTTP and WebSocket surface."""

from datetime import timedelta

from fastapi.testclient import TestClient
import pytest
from starlette.websockets import WebSocketDisconnect

from agent_monitor import server
from agent_monitor.archive import ArchiveMap
from agent_monitor.config import MonitorConfig
from agent_monitor.engine import MonitorEngine
from agent_monitor.server import WS_TRY_AGAIN_LATER, create_app

from helpers import BASE, FakeWatcher, record, write_log


@pytest.fixture
def engine(tmp_path, state_dir):
    return MonitorEngine(
        MonitorConfig(),
        state_dir=state_dir,
        projects_dir=tmp_path / "projects",
        archive_map=ArchiveMap(tmp_path / "archive-map.json"),
        archive_base_path="",
        watcher_factory=FakeWatcher,
        refresh_interval=3600,
        max_channels=1,
        now=lambda: BASE + timedelta(minutes=1),
    )


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as test_client:
        yield test_client


class TestRest:
    def test_sessions(self, client, state_dir):
        write_log(state_dir, record("session_start", cwd="/work/api"), record("tool_use", tool_name="Bash"))
        response = client.get("/api/sessions")
        assert response.status_code == 200
        body = response.json()
        assert [entry["id"] for entry in body] == ["sess-1"]
        assert body[0]["summary"] == "Ran 1 command"

    def test_timeline(self, client, state_dir):
        write_log(
            state_dir,
            record("session_start"),
            record("tool_use", ts=BASE + timedelta(seconds=1), tool_name="Read"),
            record("tool_use", ts=BASE + timedelta(seconds=2), tool_name="Edit"),
        )
        response = client.get("/api/timeline", params={"sessionId": "sess-1"})
        assert response.status_code == 200
        body = response.json()
        assert body["session"] == {"id": "sess-1", "name": "alpha", "status": "active"}
        assert [entry["toolName"] for entry in body["timeline"]] == ["Edit", "Read"]

    def test_timeline_errors(self, client):
        assert client.get("/api/timeline").status_code == 400
        assert client.get("/api/timeline", params={"sessionId": "nope"}).status_code == 404

    def test_groups(self, client, state_dir):
        write_log(state_dir, record("session_start", session_id="a", cwd="/x/web"))
        assert client.get("/api/groups").json() == {"web": ["a"]}

    def test_settings_without_key(self, client):
        body = client.get("/api/settings").json()
        assert body["apiKey"] == ""
        assert body["maxRecentTools"] == 10

    def test_clear(self, client, state_dir):
        write_log(state_dir, record("session_start", session_id="done"), record("session_end", session_id="done"))
        assert client.post("/api/clear").json() == {"cleared": 1}
        assert not (state_dir / "done.jsonl").exists()


class TestWebSocket:
    def test_connect_receives_current_sessions(self, client, state_dir):
        write_log(state_dir, record("session_start"))
        with client.websocket_connect("/ws/sessions") as ws:
            payload = ws.receive_json()
        assert [entry["id"] for entry in payload] == ["sess-1"]

    def test_channels_beyond_the_cap_are_closed(self, client, engine):
        with client.websocket_connect("/ws/sessions") as first:
            first.receive_json()
            with client.websocket_connect("/ws/sessions") as second:
                with pytest.raises(WebSocketDisconnect) as excinfo:
                    second.receive_json()
                assert excinfo.value.code == WS_TRY_AGAIN_LATER
            assert engine.broadcaster.channel_count == 1


class TestMain:
    def test_help_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            server.main(["--help"])
        assert excinfo.value.code == 0
        assert "--port" in capsys.readouterr().out

    def test_runs_uvicorn_with_parsed_options(self, monkeypatch):
        calls = []
        monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: calls.append(kwargs))
        monkeypatch.setattr(server, "configure_logging", lambda level=None, verbose=False: None)

        server.main(["--port", "9000", "--host", "0.0.0.0"])

        assert calls == [{"host": "0.0.0.0", "port": 9000, "log_level": "warning"}]

    def test_logging_options_are_passed_through(self, monkeypatch):
        seen = []
        monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: seen.append(kwargs["log_level"]))
        monkeypatch.setattr(
            server, "configure_logging", lambda level=None, verbose=False: seen.append((level, verbose))
        )

        server.main(["--log-level", "debug", "--verbose"])

        assert seen == [("debug", True), "info"]
