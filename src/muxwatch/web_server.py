"""
HTTP and WebSocket server for muxwatch.

FastAPI app exposing the session store, pane control, beads listings and
batch runs over REST, plus three push streams:

    /api/sessions/stream            session list (and batch-run updates)
    /api/sessions/{target}/stream   one pane's terminal output
    /api/beads/stream?project=...   one project's work items

Run with `muxwatch serve`, or embed via create_app(services).
"""

import asyncio
import contextlib
import inspect
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import web_control_api as control
from .batch_orchestrator import BatchOrchestrator, BatchRunConflict
from .broadcast import (
    BeadsChannel,
    ChannelLimits,
    SessionsChannel,
    TerminalChannel,
    enrich_sessions,
    fetch_enriched,
    handle_client_message,
)
from .change_watcher import ChangeWatcher
from .config import get_web_api_key
from .implementations import RealProcesses, RealTmux
from .logging_config import get_structured_logger
from .pane_inspector import PaneInspector
from .protocols import PaneInspectorProtocol, ProcessControl, TmuxControl, TrackerProtocol
from .session_store import SessionStore
from .tracker import BeadsTracker


log = get_structured_logger("server").with_context(component="server")

CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013
LOCAL_HOSTS = ("127.0.0.1", "localhost", "::1")


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Services
# =============================================================================


@dataclass
class Services:
    """Everything the routes need, built once per app."""

    store: SessionStore
    inspector: PaneInspectorProtocol
    tracker: TrackerProtocol
    tmux: TmuxControl
    processes: ProcessControl
    watcher: ChangeWatcher
    sessions: SessionsChannel
    terminal: TerminalChannel
    beads: BeadsChannel
    orchestrator: BatchOrchestrator
    api_key: Optional[str] = None

    @classmethod
    def create(
        cls,
        store: Optional[SessionStore] = None,
        inspector: Optional[PaneInspectorProtocol] = None,
        tracker: Optional[TrackerProtocol] = None,
        tmux: Optional[TmuxControl] = None,
        processes: Optional[ProcessControl] = None,
        watcher: Optional[ChangeWatcher] = None,
        limits: Optional[ChannelLimits] = None,
        api_key: Optional[str] = None,
    ) -> "Services":
        store = store or SessionStore()
        inspector = inspector or PaneInspector()
        tracker = tracker or BeadsTracker()
        watcher = watcher or ChangeWatcher(store.sessions_dir)
        limits = limits or ChannelLimits.from_config()
        sessions = SessionsChannel(store, inspector, watcher, limits)
        orchestrator = BatchOrchestrator(store, tracker, inspector, watcher)
        orchestrator.on_change(lambda: sessions.broadcast(orchestrator.create_message()))
        return cls(
            store=store,
            inspector=inspector,
            tracker=tracker,
            tmux=tmux or RealTmux(),
            processes=processes or RealProcesses(),
            watcher=watcher,
            sessions=sessions,
            terminal=TerminalChannel(inspector, limits),
            beads=BeadsChannel(tracker, limits=limits),
            orchestrator=orchestrator,
            api_key=api_key if api_key is not None else get_web_api_key(),
        )

    def stats(self) -> dict:
        return {
            "sessions": self.sessions.stats(),
            "terminal": self.terminal.stats(),
            "beads": self.beads.stats(),
        }

    def close(self) -> None:
        self.orchestrator.close()
        self.sessions.close()
        self.terminal.close()
        self.beads.close()
        self.watcher.close()


# =============================================================================
# WebSocket client adapter
# =============================================================================


MessageHandler = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]


class WebSocketClient:
    """BroadcastClient over a Starlette WebSocket.

    send() only queues; a writer task drains the queue, so the bytes still
    in the queue are the client's backpressure.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._buffered = 0
        self._closed = False
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._writer = asyncio.create_task(self._write_loop(), name="ws-writer")

    async def _write_loop(self) -> None:
        while True:
            text = await self._queue.get()
            try:
                await self.websocket.send_text(text)
            except Exception as e:
                log.debug("Send failed, marking client closed", error=e)
                self._closed = True
                return
            finally:
                self._buffered -= len(text.encode())

    def send(self, text: str) -> None:
        if self._closed:
            raise ConnectionError("WebSocket is closed")
        self._buffered += len(text.encode())
        self._queue.put_nowait(text)

    def is_open(self) -> bool:
        return not self._closed

    def buffered_amount(self) -> Optional[int]:
        return self._buffered

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        asyncio.create_task(self._close(code, reason))

    async def _close(self, code: int, reason: str) -> None:
        with contextlib.suppress(Exception):
            await self.websocket.close(code=code, reason=reason)

    async def reject(self, reason: str, code: int = CLOSE_TRY_AGAIN_LATER) -> None:
        """Close an accepted connection that no channel admitted."""
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
        await self._close(code, reason)

    async def run(self, on_message: MessageHandler) -> None:
        """Receive until the peer goes away; replies are queued like pushes."""
        try:
            while True:
                text = await self.websocket.receive_text()
                reply = on_message(text)
                if inspect.isawaitable(reply):
                    reply = await reply
                if reply and not self._closed:
                    self.send(reply)
        except WebSocketDisconnect:
            pass
        except RuntimeError:
            # Starlette raises once we closed the socket ourselves
            if not self._closed:
                raise
        finally:
            self._closed = True
            if self._writer is not None:
                self._writer.cancel()


# =============================================================================
# Request bodies
# =============================================================================


class RelocateBody(BaseModel):
    cwd: Optional[str] = None


class KillBody(BaseModel):
    pid: Optional[int] = None
    tmux_target: Optional[str] = None


class SendBody(BaseModel):
    text: Optional[str] = None
    keys: Optional[str] = None


class NewSessionBody(BaseModel):
    cwd: Optional[str] = None
    name: Optional[str] = None
    linkedTo: Optional[str] = None


class StartBatchBody(BaseModel):
    sessionId: Optional[str] = None
    tmuxTarget: Optional[str] = None
    projectPath: Optional[str] = None
    epicId: Optional[str] = None
    promptTemplate: Optional[str] = None


class BatchActionBody(BaseModel):
    action: Optional[str] = None


# =============================================================================
# App
# =============================================================================


def _error(message: str, status: int) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status)


def _key_matches(expected: Optional[str], header: Optional[str], query: Optional[str]) -> bool:
    if not expected:
        return True
    return header == expected or query == expected


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application; services are closed on shutdown."""
    services = services or Services.create()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Server starting")
        yield
        services.close()
        log.info("Server stopped")

    app = FastAPI(title="muxwatch", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return _error(str(exc.detail), exc.status_code)

    @app.exception_handler(control.ControlError)
    async def control_error(request: Request, exc: control.ControlError) -> JSONResponse:
        return _error(str(exc), exc.status)

    @app.exception_handler(BatchRunConflict)
    async def batch_conflict(request: Request, exc: BatchRunConflict) -> JSONResponse:
        return _error(str(exc), 409)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error("Invalid request body", 400)

    _register_routes(app, services)
    _register_streams(app, services)
    return app


def _register_routes(app: FastAPI, services: Services) -> None:
    """Register REST routes."""

    def require_api_key(request: Request) -> None:
        if not _key_matches(services.api_key, request.headers.get("x-api-key"), request.query_params.get("key")):
            raise HTTPException(status_code=401, detail="Unauthorized")

    auth = [Depends(require_api_key)]
    store = services.store

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "timestamp": now_ms(), **services.stats()}

    # -- sessions ---------------------------------------------------------

    @app.get("/api/sessions", dependencies=auth)
    async def list_sessions() -> dict:
        sessions = await asyncio.to_thread(enrich_sessions, store, services.inspector)
        return {"sessions": sessions, "count": len(sessions), "timestamp": now_ms()}

    @app.get("/api/sessions/{session_id}", dependencies=auth)
    async def get_session(session_id: str) -> dict:
        record = store.get(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session": record.to_dict(), "timestamp": now_ms()}

    @app.patch("/api/sessions/{session_id}", dependencies=auth)
    async def relocate(session_id: str, body: RelocateBody = Body(default_factory=RelocateBody)) -> dict:
        return await asyncio.to_thread(control.relocate_session, store, session_id, body.cwd)

    @app.post("/api/sessions/{session_id}/kill", dependencies=auth)
    async def kill(session_id: str, body: KillBody = Body(default_factory=KillBody)) -> dict:
        return await asyncio.to_thread(
            control.kill_session, store, services.tmux, services.processes,
            session_id, body.pid, body.tmux_target,
        )

    @app.delete("/api/sessions/{session_id}/screenshots", dependencies=auth)
    async def delete_screenshot(session_id: str, path: Optional[str] = Query(default=None)) -> dict:
        return control.remove_screenshot(store, session_id, path)

    @app.post("/api/sessions/{target}/send", dependencies=auth)
    async def send(target: str, body: SendBody = Body(default_factory=SendBody)) -> dict:
        return await asyncio.to_thread(control.send_to_pane, services.inspector, target, body.text, body.keys)

    @app.get("/api/sessions/{target}/output", dependencies=auth)
    async def output(target: str, lines: int = Query(default=100, ge=1)) -> dict:
        return await asyncio.to_thread(control.capture_output, services.inspector, target, lines)

    @app.post("/api/projects/new-session", dependencies=auth)
    async def create_session(body: NewSessionBody = Body(default_factory=NewSessionBody)) -> dict:
        return await asyncio.to_thread(
            control.new_session, store, services.tmux, body.cwd, body.name, linked_to=body.linkedTo
        )

    # -- beads ------------------------------------------------------------

    @app.get("/api/beads", dependencies=auth)
    async def beads(project: Optional[str] = Query(default=None)) -> dict:
        if not project:
            raise HTTPException(status_code=400, detail="Missing project parameter")
        issues = await asyncio.to_thread(fetch_enriched, services.tracker, project)
        return {"issues": issues, "project": project, "timestamp": now_ms()}

    # -- batch runs -------------------------------------------------------

    orchestrator = services.orchestrator

    @app.get("/api/batch-run", dependencies=auth)
    async def list_batch_runs() -> dict:
        return {"batchRuns": [r.to_dict() for r in orchestrator.get_all()], "timestamp": now_ms()}

    @app.post("/api/batch-run", dependencies=auth)
    async def start_batch_run(body: StartBatchBody = Body(default_factory=StartBatchBody)) -> dict:
        if not (body.sessionId and body.tmuxTarget and body.projectPath and body.epicId):
            raise HTTPException(
                status_code=400,
                detail="Missing required fields: sessionId, tmuxTarget, projectPath, epicId",
            )
        run = await orchestrator.start(
            body.sessionId, body.tmuxTarget, body.projectPath, body.epicId, body.promptTemplate,
        )
        return run.to_dict()

    @app.get("/api/batch-run/{run_id}", dependencies=auth)
    async def get_batch_run(run_id: str) -> dict:
        run = orchestrator.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Batch run not found")
        return run.to_dict()

    @app.post("/api/batch-run/{run_id}", dependencies=auth)
    async def control_batch_run(run_id: str, body: BatchActionBody = Body(default_factory=BatchActionBody)) -> dict:
        if body.action == "pause":
            run = orchestrator.pause(run_id)
            if run is None:
                raise HTTPException(status_code=400, detail="Cannot pause (not running or not found)")
            return run.to_dict()
        if body.action == "resume":
            run = await orchestrator.resume(run_id)
            if run is None:
                raise HTTPException(status_code=400, detail="Cannot resume (not paused or not found)")
            return run.to_dict()
        if body.action == "stop":
            if not orchestrator.stop(run_id):
                raise HTTPException(status_code=404, detail="Batch run not found")
            return {"ok": True}
        raise HTTPException(status_code=400, detail="Invalid action. Use: pause, resume, stop")

    @app.delete("/api/batch-run/{run_id}", dependencies=auth)
    async def delete_batch_run(run_id: str) -> dict:
        if not orchestrator.stop(run_id):
            raise HTTPException(status_code=404, detail="Batch run not found")
        return {"ok": True}


def _register_streams(app: FastAPI, services: Services) -> None:
    """Register the push streams."""

    async def open_client(websocket: WebSocket) -> Optional[WebSocketClient]:
        if not _key_matches(services.api_key, websocket.headers.get("x-api-key"), websocket.query_params.get("key")):
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Unauthorized")
            return None
        await websocket.accept()
        client = WebSocketClient(websocket)
        client.start()
        return client

    @app.websocket("/api/sessions/stream")
    async def sessions_stream(websocket: WebSocket) -> None:
        client = await open_client(websocket)
        if client is None:
            return
        if not await services.sessions.add_client(client):
            await client.reject("Too many sessions clients")
            return
        try:
            await client.run(handle_client_message)
        finally:
            services.sessions.remove_client(client)

    @app.websocket("/api/sessions/{target}/stream")
    async def terminal_stream(websocket: WebSocket, target: str) -> None:
        client = await open_client(websocket)
        if client is None:
            return
        if not await services.terminal.add_client(client, target):
            await client.reject(f"Too many terminal clients for {target}")
            return

        async def on_message(text: str) -> Optional[str]:
            sizes = []
            reply = handle_client_message(text, on_resize=lambda cols, rows: sizes.append((cols, rows)))
            for cols, rows in sizes:
                await services.terminal.resize(target, cols, rows)
            return reply

        try:
            await client.run(on_message)
        finally:
            services.terminal.remove_client(client, target)

    @app.websocket("/api/beads/stream")
    async def beads_stream(websocket: WebSocket) -> None:
        client = await open_client(websocket)
        if client is None:
            return
        project = websocket.query_params.get("project")
        if not project:
            await client.reject("Missing project parameter", CLOSE_POLICY_VIOLATION)
            return
        if not await services.beads.add_client(client, project):
            await client.reject("Too many beads clients")
            return
        try:
            await client.run(handle_client_message)
        finally:
            services.beads.remove_client(client, project)

    @app.websocket("/{path:path}")
    async def unknown_stream(websocket: WebSocket, path: str) -> None:
        await websocket.accept()
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=f"Unknown stream: /{path}")


# =============================================================================
# Entry point
# =============================================================================


class ServerConfigError(Exception):
    """The server refused to start with the given bind settings."""


def check_bind(host: str, api_key: Optional[str]) -> None:
    """Binding beyond localhost requires web.api_key."""
    if host not in LOCAL_HOSTS and not api_key:
        raise ServerConfigError(
            "Binding to non-localhost requires web.api_key in config.\n"
            "Set it in ~/.muxwatch/config.yaml:\n\n"
            "  web:\n"
            '    api_key: "your-secret-key"'
        )


def run_server(host: str = "127.0.0.1", port: int = 7890) -> None:
    """Run the server until interrupted.

    Raises ServerConfigError for an unsafe bind.
    """
    check_bind(host, get_web_api_key())
    app = create_app()
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
    server = uvicorn.Server(config)
    log.info("Listening", host=host, port=port)
    server.run()
