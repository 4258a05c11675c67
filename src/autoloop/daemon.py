"""autoloop daemon: long-running process serving the WebSocket control surface."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from pathlib import Path

from autoloop.config import AUTOLOOP_DB, AutoloopConfig, ensure_autoloop_home
from autoloop.events import EventCollector
from autoloop.orchestrator import JobOrchestrator
from autoloop.reviewers import ReviewService
from autoloop.sessions import SessionManager
from autoloop.snapshots import SnapshotWriter
from autoloop.store import JobStore
from autoloop.verify import VerifyRunner
from autoloop.ws_server import AutoloopWSServer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


@dataclass
class Runtime:
    """Wired-together components sharing one store and event bus."""

    config: AutoloopConfig
    store: JobStore
    events: EventCollector
    sessions: SessionManager
    verifier: VerifyRunner
    snapshots: SnapshotWriter
    reviews: ReviewService
    orchestrator: JobOrchestrator


def build_runtime(
    config: AutoloopConfig | None = None,
    db_path: Path | None = None,
    snapshot_dir: Path | None = None,
) -> Runtime:
    config = config or AutoloopConfig.load()
    store = JobStore(db_path or AUTOLOOP_DB)
    events = EventCollector(store)
    sessions = SessionManager(config.session, events=events)
    verifier = VerifyRunner()
    snapshots = SnapshotWriter(snapshot_dir, output_provider=sessions.recent_output)
    reviews = ReviewService(config.reviewer, snapshots)
    orchestrator = JobOrchestrator(
        store, sessions, verifier, snapshots,
        reviews=reviews, events=events, config=config.loop,
    )
    return Runtime(config, store, events, sessions, verifier, snapshots, reviews, orchestrator)


class AutoloopDaemon:
    """Long-running daemon: WebSocket bridge over a shared runtime."""

    def __init__(self, config: AutoloopConfig | None = None):
        ensure_autoloop_home()
        self.runtime = build_runtime(config)
        self.config = self.runtime.config
        self._ws_server: AutoloopWSServer | None = None
        self._stop_event = asyncio.Event()
        self._stopping = False

    async def start(self) -> None:
        """Start the bridge and block until stopped."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        rt = self.runtime
        self._ws_server = AutoloopWSServer(
            event_collector=rt.events,
            orchestrator=rt.orchestrator,
            sessions=rt.sessions,
            store=rt.store,
            reviews=rt.reviews,
            host=self.config.server.host,
            port=self.config.server.port,
        )
        await self._ws_server.start()
        rt.events.emit("daemon_start", f"Daemon started (reviewer={rt.reviews.provider})")
        if not rt.reviews.is_configured():
            logger.warning("No reviewer credential configured; jobs will stop at waiting_approval")

        await self._stop_event.wait()

    async def stop(self) -> None:
        """Graceful shutdown."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Daemon shutting down")

        if self._ws_server:
            with contextlib.suppress(asyncio.CancelledError):
                await self._ws_server.stop()

        await self.runtime.orchestrator.close()
        self.runtime.sessions.terminate_all()
        self.runtime.events.emit("daemon_stop", "Daemon stopped")
        self._stop_event.set()


def main():
    """Entry point for python -m autoloop.daemon."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    daemon = AutoloopDaemon()
    asyncio.run(daemon.start())


if __name__ == "__main__":
    main()
