"""Shared test fixtures for the autoloop test suite."""

import asyncio
import time

import pytest

from autoloop.config import LoopConfig, SessionConfig
from autoloop.events import EventCollector
from autoloop.models import ReviewOutcome, SnapshotResult, VerifyResult
from autoloop.orchestrator import JobOrchestrator
from autoloop.sessions import SessionManager
from autoloop.store import JobStore


class FakeProcess:
    """Stands in for a pty child: records input, lets tests push output or exit."""

    def __init__(self, argv, cwd, env, cols, rows, on_data, on_exit):
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.size = (cols, rows)
        self.writes: list[str] = []
        self.terminated = False
        self.fail_resize = False
        self._on_data = on_data
        self._on_exit = on_exit

    @property
    def pid(self):
        return 4242

    def write(self, data):
        if self.terminated:
            raise OSError("pty is closed")
        self.writes.append(data)

    def resize(self, cols, rows):
        if self.terminated or self.fail_resize:
            raise OSError("pty is closed")
        self.size = (cols, rows)

    def terminate(self):
        self.terminated = True

    def emit(self, text):
        self._on_data(text)

    def exit(self, code=0, sig=None):
        self.terminated = True
        self._on_exit(code, sig)


class FakeSpawner:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.fail = False

    def __call__(self, **kwargs):
        if self.fail:
            raise OSError("spawn failed")
        proc = FakeProcess(**kwargs)
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


class FakeVerifier:
    def __init__(self, exit_code=0, delay=0.0, error=None):
        self.exit_code = exit_code
        self.delay = delay
        self.error = error
        self.calls = []
        self.cancelled = False

    async def run_verify(self, workspace, profile):
        self.calls.append((workspace, profile))
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error:
            raise self.error
        return VerifyResult(success=self.exit_code == 0, exit_code=self.exit_code,
                            stdout_tail="ok" if self.exit_code == 0 else "lint errors")


class FakeSnapshots:
    def __init__(self, ids=("S1", "S2", "S3", "S4"), fail=False):
        self.ids = list(ids)
        self.fail = fail
        self.calls = []

    async def create_snapshot(self, workspace, job_id, intent="", recent_output=None,
                              verify_exit_code=None):
        self.calls.append({"workspace": workspace, "job_id": job_id, "intent": intent,
                           "recent_output": recent_output, "verify_exit_code": verify_exit_code})
        if self.fail:
            return SnapshotResult(success=False, error="disk full")
        snapshot_id = self.ids[min(len(self.calls), len(self.ids)) - 1]
        return SnapshotResult(success=True, snapshot_id=snapshot_id,
                              summary={"dirty": True, "changed_files": 1})


class FakeReviews:
    def __init__(self, results=(), configured=True, error=None, delay=0.0):
        self.results = list(results)
        self.configured = configured
        self.error = error
        self.delay = delay
        self.calls = []

    def is_configured(self, credential=None):
        return self.configured or bool(credential)

    async def review(self, job_id, snapshot_id, credential=None):
        self.calls.append((job_id, snapshot_id, credential))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            return ReviewOutcome(success=False, error=self.error)
        return ReviewOutcome(success=True, result=self.results.pop(0))


@pytest.fixture
def store(tmp_path):
    """Provide a JobStore backed by a temporary database."""
    return JobStore(db_path=tmp_path / "test_autoloop.db")


@pytest.fixture
def events(store):
    return EventCollector(store)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def session_config():
    """Fast timings so idle detection fires within a test."""
    return SessionConfig(
        agent_command="claude",
        launch_delay_seconds=0.01,
        idle_threshold_seconds=0.1,
        shell="/bin/sh",
    )


@pytest.fixture
def sessions(session_config, events, spawner):
    return SessionManager(session_config, events=events, spawner=spawner)


@pytest.fixture
def loop_config():
    return LoopConfig(
        settle_delay_seconds=0.0,
        max_auto_fixes=2,
        verify_timeout_seconds=5.0,
        snapshot_timeout_seconds=5.0,
        review_timeout_seconds=5.0,
    )


@pytest.fixture
def make_orchestrator(store, sessions, events, loop_config):
    """Factory: orchestrator over fake phase runners."""

    def _make(verifier=None, snapshots=None, reviews=None, **config_overrides):
        for key, value in config_overrides.items():
            setattr(loop_config, key, value)
        return JobOrchestrator(
            store,
            sessions,
            verifier or FakeVerifier(),
            snapshots or FakeSnapshots(),
            reviews=reviews,
            events=events,
            config=loop_config,
        )

    return _make


@pytest.fixture
def wait_for_status(store):
    """Poll the store until a job reaches one of the given statuses."""

    async def _wait(job_id, *statuses, timeout=3.0):
        wanted = {s.value if hasattr(s, "value") else s for s in statuses}
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = store.get(job_id)
            if job and job.status.value in wanted:
                return job
            await asyncio.sleep(0.01)
        job = store.get(job_id)
        raise AssertionError(
            f"job {job_id} stuck in {job.status.value if job else None}, wanted {sorted(wanted)}"
        )

    return _wait


@pytest.fixture
def project_path(tmp_path):
    """Provide a temporary npm-style project directory."""
    project = tmp_path / "test_project"
    project.mkdir()
    (project / "package.json").write_text(
        '{"name": "demo", "scripts": {"lint": "eslint .", "test": "jest"}}\n'
    )
    (project / "index.js").write_text("module.exports = () => 42;\n")
    return str(project)
