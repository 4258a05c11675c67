"""WebSocket bridge: localhost control surface for UI clients.

Protocol: JSON messages over ws://127.0.0.1:9850

Requests:  {"type": "command", "id": "...", "action": "...", "data": {...}}
Responses: {"type": "response", "id": "...", "action": "...", "data": {...}}
Pushed:    {"type": "event", "data": {...}}                       timeline events
           {"type": "job_update", "job_id": "...", "job": {...}}   every job transition
           {"type": "session_data", "session_id": "...", "data": "..."}
           {"type": "session_exit", "session_id": "...", "exit_code": N, "signal": N}
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from autoloop.events import EVENT_JOB_UPDATE
from autoloop.exceptions import SessionError

if TYPE_CHECKING:
    from autoloop.events import EventCollector
    from autoloop.orchestrator import JobOrchestrator
    from autoloop.reviewers import ReviewService
    from autoloop.sessions import SessionManager
    from autoloop.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_PORT = 9850


class AutoloopWSServer:
    """WebSocket server for local UI clients."""

    def __init__(
        self,
        event_collector: EventCollector,
        orchestrator: JobOrchestrator,
        sessions: SessionManager,
        store: JobStore,
        reviews: ReviewService | None = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
    ):
        self._events = event_collector
        self._orchestrator = orchestrator
        self._sessions = sessions
        self._store = store
        self._reviews = reviews
        self._host = host
        self._port = port
        self._clients: set = set()
        self._server = None
        self._started_at = time.time()
        self._tasks: set[asyncio.Task] = set()

        self._events.add_listener(self._broadcast_event)
        self._orchestrator.subscribe(self._broadcast_job)
        self._sessions.add_listener(self._broadcast_session)

    async def start(self) -> None:
        """Start WebSocket server."""
        self._server = await serve(self._handler, self._host, self._port)
        logger.info(f"WebSocket server listening on ws://{self._host}:{self._port}")

    async def stop(self) -> None:
        """Close the server and all connections."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            logger.info("WebSocket server stopped")

        self._events.remove_listener(self._broadcast_event)
        self._orchestrator.unsubscribe(self._broadcast_job)
        self._sessions.remove_listener(self._broadcast_session)

    async def _handler(self, websocket) -> None:
        """Handle a single client connection."""
        self._clients.add(websocket)
        remote = websocket.remote_address
        logger.info(f"Client connected: {remote}")

        try:
            async for raw in websocket:
                try:
                    cmd_data = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({
                        "type": "error",
                        "data": {"message": "Invalid JSON"},
                    }))
                    continue

                response = await self.handle_command(cmd_data)
                await websocket.send(json.dumps(response, default=str))
        except ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            logger.info(f"Client disconnected: {remote}")

    async def handle_command(self, cmd_data: dict) -> dict:
        """Dispatch one command and build its response payload."""
        action = cmd_data.get("action", "")
        data = cmd_data.get("data") or {}
        request_id = cmd_data.get("id")
        started_at = time.time()

        try:
            result = await self._dispatch(action, data)
        except Exception as e:
            logger.warning(f"WS command '{action}' failed: {e}")
            result = {"error": str(e), "error_type": type(e).__name__}

        if isinstance(result, dict):
            result.setdefault("_meta", {})
            result["_meta"].update({
                "request_id": request_id,
                "action": action,
                "duration_ms": int(max(0.0, (time.time() - started_at) * 1000)),
            })
        return {"type": "response", "id": request_id, "action": action, "data": result}

    async def _dispatch(self, action: str, data: dict) -> Any:
        sessions = self._sessions
        orchestrator = self._orchestrator

        # --- Sessions ---
        if action == "session_create":
            session_id = sessions.create(data.get("workspace", ""))
            if session_id is None:
                return {"error": "Failed to spawn session"}
            return {"session_id": session_id}

        if action == "session_write":
            self._require_session(data)
            return {"written": sessions.write(data["session_id"], data.get("data", ""))}

        if action == "session_resize":
            self._require_session(data)
            sessions.resize(data["session_id"], int(data.get("cols", 80)), int(data.get("rows", 30)))
            return {"resized": data["session_id"]}

        if action == "session_terminate":
            self._require_session(data)
            return {"terminated": sessions.terminate(data["session_id"])}

        if action == "session_output":
            return {"lines": sessions.recent_output(data.get("session_id"))}

        if action == "session_diagnostics":
            return sessions.diagnostics(data.get("session_id"))

        # --- Jobs ---
        if action == "job_create":
            description = data.get("description", "")
            if not description:
                return {"error": "Missing 'description'"}
            job = orchestrator.create_job(description, data.get("workspace", ""))
            return {"job": job.to_dict()}

        if action == "job_list":
            return {"jobs": [j.to_dict() for j in orchestrator.list_jobs()]}

        if action == "job_get":
            return {"job": orchestrator.get_job(data["job_id"]).to_dict()}

        if action == "job_start":
            job = orchestrator.start_job(
                data["job_id"],
                workspace=data.get("workspace"),
                session_id=data.get("session_id"),
            )
            return {"job": job.to_dict()}

        if action == "job_advance":
            job_id = data["job_id"]
            orchestrator.get_job(job_id)
            self._spawn(orchestrator.advance_loop(job_id))
            return {"queued": job_id}

        if action == "job_action":
            return await orchestrator.handle_user_action(data["job_id"], data.get("action", ""))

        if action == "job_fix_from_review":
            job = orchestrator.create_fix_job(data["job_id"])
            return {"job": job.to_dict()}

        if action == "get_timeline":
            return {"events": self._store.get_timeline(
                limit=int(data.get("limit", 50)),
                job_id=data.get("job_id"),
            )}

        # --- Reviewer ---
        if action == "set_reviewer":
            if self._reviews is None:
                return {"error": "Reviewer not configured"}
            self._reviews.set_reviewer(data.get("provider", ""))
            return {"provider": self._reviews.provider}

        if action == "get_status":
            return {
                "uptime": max(0.0, time.time() - self._started_at),
                "sessions": sessions.list_sessions(),
                "reviewer": self._reviews.provider if self._reviews else None,
                "clients": len(self._clients),
            }

        return {"error": f"Unknown action: {action}"}

    def _require_session(self, data: dict) -> None:
        session_id = data.get("session_id")
        if not session_id or not self._sessions.has_session(session_id):
            raise SessionError(f"Unknown session '{session_id}'")

    # --- Broadcasting ---

    def _send_all(self, payload: dict) -> None:
        if not self._clients:
            return
        message = json.dumps(payload, default=str)
        for ws in list(self._clients):
            self._spawn(self._send(ws, message))

    async def _send(self, ws, message: str) -> None:
        try:
            await ws.send(message)
        except ConnectionClosed:
            self._clients.discard(ws)

    def _broadcast_event(self, event_data: dict) -> None:
        """EventCollector listener: push timeline events to all clients."""
        if event_data.get("event_type") == EVENT_JOB_UPDATE:
            return
        self._send_all({"type": "event", "data": event_data})

    def _broadcast_job(self, job_id: str, record: dict) -> None:
        self._send_all({"type": "job_update", "job_id": job_id, "job": record})

    def _broadcast_session(self, event: str, session_id: str, payload: dict) -> None:
        if event == "data":
            self._send_all({"type": "session_data", "session_id": session_id, "data": payload["data"]})
        elif event == "exit":
            self._send_all({"type": "session_exit", "session_id": session_id, **payload})

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
