"""FastAPI web server for agent-monitor."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from . import __version__
from .config import get_settings
from .engine import MonitorEngine
from .logging_setup import configure_logging
from .timeline import build_timeline

log = logging.getLogger(__name__)

# Close code for "try again later" when the channel cap is reached
WS_TRY_AGAIN_LATER = 1013


def create_app(engine: MonitorEngine | None = None) -> FastAPI:
    """Build the app around one engine; the engine runs for the app's lifetime."""
    engine = engine or MonitorEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(title="agent-monitor", version=__version__, lifespan=lifespan)
    app.state.engine = engine

    @app.get("/api/sessions")
    async def list_sessions():
        return engine.build_payload()

    @app.get("/api/timeline")
    async def get_timeline(sessionId: str | None = None):
        """Merged tool/message timeline for one session, newest first."""
        if not sessionId:
            raise HTTPException(status_code=400, detail="sessionId is required")
        for session in engine.current_sessions():
            if session.id == sessionId:
                conversation = engine.conversations.load(session.id, session.cwd)
                return {
                    "session": {"id": session.id, "name": session.name, "status": session.status.value},
                    "timeline": build_timeline(session.recent_tools, conversation),
                }
        raise HTTPException(status_code=404, detail="Session not found")

    @app.get("/api/groups")
    async def list_groups():
        return engine.groups()

    @app.get("/api/settings")
    async def settings():
        return get_settings(engine.config)

    @app.post("/api/clear")
    async def clear_ended():
        return {"cleared": engine.clear_ended()}

    @app.websocket("/ws/sessions")
    async def ws_sessions(websocket: WebSocket):
        """Push channel: the full session list on connect and after every refresh."""
        await websocket.accept()
        if not engine.broadcaster.has_capacity():
            log.warning("Rejecting WebSocket: %d channels already open", engine.broadcaster.channel_count)
            await websocket.close(code=WS_TRY_AGAIN_LATER)
            return
        if not await engine.attach(websocket):
            # Gone before the first payload went out.
            return
        try:
            while True:
                # Clients don't send anything meaningful; this just waits for disconnect.
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            engine.detach(websocket)

    return app


def main(args: list[str] | None = None) -> None:
    """CLI entry point: launch uvicorn with the monitor engine."""
    import uvicorn

    if args is None:
        args = sys.argv[1:]

    port = 8420
    host = "127.0.0.1"
    log_level = None
    verbose = False

    i = 0
    while i < len(args):
        if args[i] == "--port" and i + 1 < len(args):
            port = int(args[i + 1])
            i += 2
        elif args[i] == "--host" and i + 1 < len(args):
            host = args[i + 1]
            i += 2
        elif args[i] == "--log-level" and i + 1 < len(args):
            log_level = args[i + 1]
            i += 2
        elif args[i] in ("-v", "--verbose"):
            verbose = True
            i += 1
        elif args[i] in ("-h", "--help"):
            print("Usage: agent-monitor [OPTIONS]")
            print("\nMonitor running coding-agent sessions and push live updates.")
            print("\nOptions:")
            print(f"  --port PORT      Port to listen on (default: {port})")
            print(f"  --host HOST      Host to bind to (default: {host})")
            print("  --log-level LVL  Log file level, e.g. DEBUG (default: INFO)")
            print("  -v, --verbose    Also show that level on stderr")
            sys.exit(0)
        else:
            i += 1

    log_path = configure_logging(log_level, verbose=verbose)
    print(f"agent-monitor v{__version__} starting at http://{host}:{port} (logs: {log_path or 'stderr'})")
    uvicorn.run(create_app(), host=host, port=port, log_level="info" if verbose else "warning")
