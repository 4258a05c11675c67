"""Interactive agent sessions on pseudo-terminals.

Each session is a shell spawned on a pty, rooted at a workspace. The manager
keeps per-session metrics and a ring buffer of recent non-blank lines, and
runs quiescence (idle) detection: every output chunk re-arms a timer, and
when the timer elapses the session's idle callback fires once.

Spawn failures and process exits are reported as events, never raised.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import inspect
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from autoloop.config import SessionConfig
from autoloop.events import EVENT_SESSION_ERROR, EVENT_SESSION_EXIT, EVENT_SESSION_SPAWN

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class ProcessHandle(Protocol):
    """What the manager needs from a spawned interactive process."""

    @property
    def pid(self) -> int | None: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def terminate(self) -> None: ...


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess:
    """A child process attached to a pseudo-terminal.

    Output is read from the master fd by an event-loop reader and decoded
    incrementally as UTF-8. on_exit receives (exit_code, signal) once the
    child has been reaped.
    """

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: Callable[[str], None],
        on_exit: Callable[[int | None, int | None], None],
    ):
        self._loop = asyncio.get_running_loop()
        self._on_data = on_data
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reap_task: asyncio.Task | None = None

        master, slave = pty.openpty()
        try:
            _set_winsize(slave, cols, rows)
            self._proc = subprocess.Popen(
                argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=cwd,
                env=env,
                close_fds=True,
                start_new_session=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)

        self._master: int | None = master
        self._loop.add_reader(master, self._on_readable)

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._master, READ_CHUNK)
        except OSError:
            # EIO once the slave side is gone
            chunk = b""
        if not chunk:
            self._close()
            return
        text = self._decoder.decode(chunk)
        if text:
            self._on_data(text)

    def write(self, data: str) -> None:
        if self._master is None:
            raise OSError("pty is closed")
        os.write(self._master, data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        if self._master is None:
            raise OSError("pty is closed")
        _set_winsize(self._master, cols, rows)

    def terminate(self) -> None:
        if self._proc.poll() is None:
            try:
                os.killpg(self._proc.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
        self._close()

    def _close(self) -> None:
        if self._master is None:
            return
        self._loop.remove_reader(self._master)
        os.close(self._master)
        self._master = None
        self._reap_task = self._loop.create_task(self._reap())

    async def _reap(self) -> None:
        code = await self._loop.run_in_executor(None, self._proc.wait)
        if code < 0:
            self._on_exit(None, -code)
        else:
            self._on_exit(code, None)


@dataclass
class SessionMetrics:
    pid: int | None = None
    spawn_time: float = 0.0
    bytes_received: int = 0
    last_output_time: float | None = None
    exit_code: int | None = None
    signal: int | None = None
    spawn_command: str = ""
    cwd: str = ""

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "spawn_time": self.spawn_time,
            "bytes_received": self.bytes_received,
            "last_output_time": self.last_output_time,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "spawn_command": self.spawn_command,
            "cwd": self.cwd,
        }


@dataclass
class Session:
    id: str
    workspace: str
    metrics: SessionMetrics
    recent_lines: deque
    process: Any = None
    alive: bool = True
    launched: bool = False
    idle_callback: Callable | None = None
    idle_handle: asyncio.TimerHandle | None = None
    launch_handle: asyncio.TimerHandle | None = None

    def cancel_timers(self) -> None:
        for handle in (self.idle_handle, self.launch_handle):
            if handle is not None:
                handle.cancel()
        self.idle_handle = None
        self.launch_handle = None


class SessionManager:
    """Owns interactive sessions and their quiescence detection."""

    def __init__(
        self,
        config: SessionConfig | None = None,
        events=None,
        spawner: Callable[..., ProcessHandle] = PtyProcess,
    ):
        self.config = config or SessionConfig()
        self._events = events
        self._spawner = spawner
        self._sessions: dict[str, Session] = {}
        self._ended: dict[str, Session] = {}
        self._listeners: list[Callable] = []
        self._tasks: set[asyncio.Task] = set()

    # --- Lifecycle ---

    def create(self, workspace: str = "") -> str | None:
        """Spawn a shell for workspace. Returns the session id, or None on spawn failure."""
        session_id = f"sess-{uuid.uuid4().hex[:8]}"
        cwd = workspace or str(Path.home())
        shell = self.config.shell or os.environ.get("SHELL") or "bash"
        env = os.environ.copy()
        env["TERM"] = self.config.term

        session = Session(
            id=session_id,
            workspace=cwd,
            metrics=SessionMetrics(spawn_time=time.time(), spawn_command=shell, cwd=cwd),
            recent_lines=deque(maxlen=self.config.recent_lines),
        )

        try:
            session.process = self._spawner(
                argv=[shell],
                cwd=cwd,
                env=env,
                cols=self.config.cols,
                rows=self.config.rows,
                on_data=lambda data: self._on_data(session_id, data),
                on_exit=lambda code, sig: self._on_exit(session_id, code, sig),
            )
        except Exception as e:
            logger.error(f"Failed to spawn session in {cwd}: {e}")
            self._emit(EVENT_SESSION_ERROR, f"Spawn failed: {e}", session_id,
                       {"workspace": cwd, "command": shell, "error": str(e)})
            self._notify("error", session_id, {"error": str(e)})
            return None

        session.metrics.pid = session.process.pid
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} spawned (pid={session.metrics.pid}, cwd={cwd})")
        self._emit(EVENT_SESSION_SPAWN, f"Session spawned in {cwd}", session_id,
                   {"pid": session.metrics.pid, "command": shell})
        return session_id

    def write(self, session_id: str, data: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not session.alive:
            logger.warning(f"Write to unknown or exited session {session_id} ignored")
            return False
        try:
            session.process.write(data)
        except OSError as e:
            logger.warning(f"Write to session {session_id} failed: {e}")
            return False
        return True

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        try:
            session.process.resize(cols, rows)
        except OSError as e:
            logger.debug(f"Resize of session {session_id} ignored: {e}")

    def terminate(self, session_id: str) -> bool:
        """Hang up the session's process group and report the exit now.

        The later reap of the child finds the session already ended, so
        listeners see exactly one exit per session.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.idle_callback = None
        try:
            session.process.terminate()
        except OSError as e:
            logger.warning(f"Terminating session {session_id} failed: {e}")
        logger.info(f"Session {session_id} terminated")
        self._finish(session_id, session, None, int(signal.SIGHUP), "Session terminated")
        return True

    def terminate_all(self) -> None:
        for session_id in list(self._sessions):
            self.terminate(session_id)

    # --- Queries ---

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def is_alive(self, session_id: str | None) -> bool:
        session = self._sessions.get(session_id) if session_id else None
        return bool(session and session.alive)

    def list_sessions(self) -> list[str]:
        return list(self._sessions)

    def recent_output(self, session_id: str | None = None) -> list[str]:
        """Recent non-blank lines of a session, or of the first live session."""
        session = self._lookup(session_id)
        return list(session.recent_lines) if session else []

    def metrics(self, session_id: str | None = None) -> dict | None:
        session = self._lookup(session_id)
        return session.metrics.to_dict() if session else None

    def diagnostics(self, session_id: str | None = None) -> dict:
        session = self._lookup(session_id)
        if session is None:
            return {"error": "No session"}
        m = session.metrics
        now = time.time()
        return {
            "session_id": session.id,
            "process": {
                "pid": m.pid,
                "is_alive": session.alive,
                "exit_code": m.exit_code,
                "signal": m.signal,
                "spawn_command": m.spawn_command,
                "spawn_cwd": m.cwd,
                "spawn_time": m.spawn_time,
                "uptime_ms": int((now - m.spawn_time) * 1000) if m.spawn_time else 0,
            },
            "pty": {
                "bytes_received": m.bytes_received,
                "last_output_time": m.last_output_time,
                "time_since_last_output": (
                    int((now - m.last_output_time) * 1000) if m.last_output_time else None
                ),
                "recent_logs": list(session.recent_lines),
            },
        }

    def _lookup(self, session_id: str | None) -> Session | None:
        if session_id is None:
            return next(iter(self._sessions.values()), None)
        return self._sessions.get(session_id) or self._ended.get(session_id)

    # --- Idle callbacks ---

    def set_idle_callback(self, session_id: str, callback: Callable[[str], Any]) -> None:
        """Register the session's idle callback, replacing any previous one."""
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning(f"Idle callback for unknown session {session_id} ignored")
            return
        session.idle_callback = callback

    def clear_idle_callback(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.idle_callback = None
        if session.idle_handle is not None:
            session.idle_handle.cancel()
            session.idle_handle = None

    def _fire_idle(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.idle_handle = None
        callback = session.idle_callback
        if callback is None:
            return
        logger.debug(f"Session {session_id} idle")
        self._invoke(callback, session_id)

    # --- Listeners ---

    def add_listener(self, callback: Callable[[str, str, dict], Any]) -> None:
        """Register cb(event, session_id, payload) for data / exit / error events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    # --- Process callbacks ---

    def _on_data(self, session_id: str, data: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        loop = asyncio.get_running_loop()
        session.metrics.bytes_received += len(data.encode("utf-8"))
        session.metrics.last_output_time = time.time()

        for line in data.split("\n"):
            line = line.rstrip("\r")
            if line.strip():
                session.recent_lines.append(line)

        if not session.launched:
            session.launched = True
            if self.config.agent_command:
                session.launch_handle = loop.call_later(
                    self.config.launch_delay_seconds, self._inject_launch, session_id,
                )

        if session.idle_handle is not None:
            session.idle_handle.cancel()
        session.idle_handle = loop.call_later(
            self.config.idle_threshold_seconds, self._fire_idle, session_id,
        )

        self._notify("data", session_id, {"data": data})

    def _inject_launch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.launch_handle = None
        logger.info(f"Launching agent in session {session_id}: {self.config.agent_command}")
        self.write(session_id, self.config.agent_command + "\r")

    def _on_exit(self, session_id: str, exit_code: int | None, sig: int | None) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        logger.info(f"Session {session_id} exited (code={exit_code}, signal={sig})")
        self._finish(session_id, session, exit_code, sig, f"Session exited with code {exit_code}")

    def _finish(self, session_id: str, session: Session, exit_code: int | None,
                sig: int | None, summary: str) -> None:
        session.cancel_timers()
        session.alive = False
        session.metrics.exit_code = exit_code
        session.metrics.signal = sig
        self._ended[session_id] = session
        self._emit(EVENT_SESSION_EXIT, summary, session_id, {"exit_code": exit_code, "signal": sig})
        self._notify("exit", session_id, {"exit_code": exit_code, "signal": sig})

    # --- Helpers ---

    def _invoke(self, callback: Callable, *args) -> None:
        try:
            result = callback(*args)
        except Exception as e:
            logger.warning(f"Session callback error: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _notify(self, event: str, session_id: str, payload: dict) -> None:
        for listener in list(self._listeners):
            self._invoke(listener, event, session_id, payload)

    def _emit(self, event_type: str, summary: str, session_id: str, metadata: dict) -> None:
        if self._events is not None:
            self._events.emit(event_type, summary, session_id=session_id, metadata=metadata)
