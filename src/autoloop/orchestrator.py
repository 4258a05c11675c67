"""Job orchestrator: drives a job through Verify -> Snapshot -> Review rounds.

A round starts when the job's session goes quiet. The agent's completion is
never observed directly, only inferred from silence, so each job carries a
runtime context binding it to its session and guarding against a second
round starting while one is in progress.

Every state change goes through _update_status(), which persists the job and
then notifies subscribers with (job_id, job_record).
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from autoloop.config import LoopConfig
from autoloop.decision import decide
from autoloop.events import EVENT_JOB_UPDATE
from autoloop.exceptions import AutoloopError, JobNotFoundError, PhaseTimeoutError
from autoloop.models import (
    AGENT_ACTIVE_STATES,
    RESUMABLE_STATES,
    TERMINAL_STATES,
    HistoryEntry,
    Job,
    JobStatus,
    ReviewResult,
)
from autoloop.prompts import GENERIC_FIX_PROMPT, compose_fix_job_description, compose_fix_prompt
from autoloop.store import JobRepository, new_job_id

logger = logging.getLogger(__name__)

USER_ACTIONS = ("approve", "fix", "retry")

# States after which no idle-triggered round may start
_QUIESCENT_STATES = TERMINAL_STATES | {JobStatus.WAITING_APPROVAL}


@dataclass
class JobContext:
    """Runtime binding of a job to its session."""

    job_id: str
    session_id: str | None = None
    owns_session: bool = False
    advancing: bool = False


class JobOrchestrator:
    """The job state machine.

    Collaborators are duck-typed so they can be swapped:
        sessions: SessionManager
        verifier: run_verify(workspace, profile) -> VerifyResult
        snapshots: create_snapshot(workspace, job_id, intent, ...) -> SnapshotResult
        reviews: is_configured(credential), review(job_id, snapshot_id, credential) -> ReviewOutcome
    """

    def __init__(
        self,
        store: JobRepository,
        sessions,
        verifier,
        snapshots,
        reviews=None,
        events=None,
        config: LoopConfig | None = None,
        credential: str | None = None,
    ):
        self._store = store
        self._sessions = sessions
        self._verifier = verifier
        self._snapshots = snapshots
        self._reviews = reviews
        self._events = events
        self.config = config or LoopConfig()
        self.credential = credential
        self._contexts: dict[str, JobContext] = {}
        self._subscribers: list[Callable] = []
        self._tasks: set[asyncio.Task] = set()

        self._sessions.add_listener(self._on_session_event)

    # --- Subscriptions ---

    def subscribe(self, callback: Callable[[str, dict], Any]) -> None:
        """Register cb(job_id, job_record), called after every persisted change."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    # --- Queries ---

    def get_job(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self) -> list[Job]:
        return self._store.list()

    def context(self, job_id: str) -> JobContext | None:
        return self._contexts.get(job_id)

    # --- Update-and-publish ---

    def _update_status(
        self,
        job_id: str,
        status: JobStatus | None = None,
        *,
        action: str | None = None,
        result: Any = None,
        **fields: Any,
    ) -> Job:
        """Persist a job change, append a history entry, then notify subscribers."""
        job = self.get_job(job_id)
        if action:
            fields["history"] = job.history + [HistoryEntry(action=action, result=result)]
        if status is not None:
            fields["status"] = status
        job = self._store.upsert(job_id, **fields)

        if status in _QUIESCENT_STATES:
            ctx = self._contexts.get(job_id)
            if ctx and ctx.session_id:
                self._sessions.clear_idle_callback(ctx.session_id)

        if status is not None:
            logger.info(f"Job {job_id}: -> {status.value}")
        self._publish(job, action or (status.value if status else "update"))
        return job

    def _publish(self, job: Job, summary: str) -> None:
        record = job.to_dict()
        if self._events is not None:
            self._events.emit(EVENT_JOB_UPDATE, f"{job.id}: {summary}",
                              job_id=job.id, session_id=job.session_id, metadata=record)
        for callback in list(self._subscribers):
            try:
                callback(job.id, record)
            except Exception as e:
                logger.warning(f"Job subscriber error: {e}")

    def _fail(self, job_id: str, reason: str, action: str = "failed",
              result: Any = None, **fields: Any) -> Job:
        logger.warning(f"Job {job_id} failed: {reason}")
        return self._update_status(
            job_id,
            JobStatus.FAILED,
            action=action,
            result=result if result is not None else {"reason": reason},
            failure_reason=reason,
            **fields,
        )

    # --- Job lifecycle ---

    def create_job(self, description: str, workspace: str = "",
                   parent_job_id: str | None = None) -> Job:
        job_id = new_job_id()
        self._store.upsert(
            job_id,
            description=description,
            workspace=workspace,
            parent_job_id=parent_job_id,
            status=JobStatus.IDLE,
            created_at=time.time(),
        )
        return self._update_status(job_id, action="created", result={"parent_job_id": parent_job_id})

    def create_fix_job(self, parent_job_id: str, review_result: ReviewResult | None = None) -> Job:
        """New job carrying a review's must-fix items, in the parent's workspace."""
        parent = self.get_job(parent_job_id)
        result = review_result or parent.review_result
        if result is None:
            raise AutoloopError(f"Job '{parent_job_id}' has no review result to fix")
        description = compose_fix_job_description(parent.id, result)
        return self.create_job(description, parent.workspace, parent_job_id=parent.id)

    def start_job(self, job_id: str, workspace: str | None = None,
                  session_id: str | None = None) -> Job:
        """Bind the job to a session and hand the agent its instruction.

        With session_id the agent is assumed to be running there already and
        the description is written immediately. Otherwise a new session is
        spawned and the description is sent once the agent has booted (the
        session's first quiet period).
        """
        job = self.get_job(job_id)
        if job.status is not JobStatus.IDLE:
            raise AutoloopError(f"Job '{job_id}' cannot start from {job.status.value}")
        workspace = workspace or job.workspace

        if session_id is not None:
            if not self._sessions.has_session(session_id):
                return self._fail(job_id, "Session not found", action="start",
                                  result={"session_id": session_id})
            ctx = JobContext(job_id, session_id=session_id)
            self._contexts[job_id] = ctx
            job = self._update_status(
                job_id, JobStatus.RUNNING, action="start",
                result={"session_id": session_id, "workspace": workspace},
                workspace=workspace, session_id=session_id, failure_reason=None,
            )
            return self._send_instruction(ctx, job)

        session_id = self._sessions.create(workspace)
        if session_id is None:
            return self._fail(job_id, "Failed to spawn session", action="start",
                              result={"workspace": workspace})
        ctx = JobContext(job_id, session_id=session_id, owns_session=True)
        self._contexts[job_id] = ctx
        job = self._update_status(
            job_id, JobStatus.RUNNING, action="start",
            result={"session_id": session_id, "workspace": workspace},
            workspace=workspace, session_id=session_id, failure_reason=None,
        )
        self._sessions.set_idle_callback(session_id, functools.partial(self._on_boot, job_id))
        return job

    def _on_boot(self, job_id: str, session_id: str) -> None:
        job = self._store.get(job_id)
        ctx = self._contexts.get(job_id)
        if job is None or ctx is None or job.status is not JobStatus.RUNNING:
            return
        self._send_instruction(ctx, job)

    def _send_instruction(self, ctx: JobContext, job: Job) -> Job:
        if not self._sessions.write(ctx.session_id, job.description + "\r"):
            return self._fail(job.id, "Session is no longer running", action="instruction")
        job = self._update_status(job.id, action="instruction", result={"session_id": ctx.session_id})
        self._sessions.set_idle_callback(ctx.session_id, functools.partial(self._on_idle, job.id))
        return job

    def _on_idle(self, job_id: str, session_id: str) -> None:
        self._spawn(self.advance_loop(job_id))

    # --- The round ---

    async def advance_loop(self, job_id: str) -> Job:
        """Run one Verify -> Snapshot -> Review round for an agent-active job."""
        job = self.get_job(job_id)
        ctx = self._context_for(job)
        if ctx.advancing:
            logger.info(f"Job {job_id}: round already in progress, ignoring")
            return job
        if job.status not in AGENT_ACTIVE_STATES:
            logger.debug(f"Job {job_id}: not advancing from {job.status.value}")
            return job

        ctx.advancing = True
        try:
            if ctx.session_id:
                self._sessions.clear_idle_callback(ctx.session_id)
            return await self._run_round(job_id, ctx)
        except PhaseTimeoutError as e:
            return self._fail(job_id, str(e), action="timeout")
        except asyncio.CancelledError:
            self._fail(job_id, "Round cancelled", action="cancelled")
            raise
        except Exception as e:
            logger.exception(f"Job {job_id}: round failed")
            return self._fail(job_id, f"{type(e).__name__}: {e}", action="error")
        finally:
            ctx.advancing = False

    async def _run_round(self, job_id: str, ctx: JobContext) -> Job:
        cfg = self.config
        await asyncio.sleep(cfg.settle_delay_seconds)
        job = self.get_job(job_id)
        if job.status not in AGENT_ACTIVE_STATES:
            return job

        job = self._update_status(job_id, JobStatus.VERIFYING)
        verify = await self._bounded(
            "Verify",
            self._verifier.run_verify(job.workspace, cfg.verify_profile),
            cfg.verify_timeout_seconds,
        )

        job = self._update_status(job_id, JobStatus.SNAPSHOTTING, action="verify",
                                  result=verify.to_dict())
        snapshot = await self._bounded(
            "Snapshot",
            self._snapshots.create_snapshot(
                job.workspace,
                job_id,
                intent=job.description,
                recent_output=self._sessions.recent_output(ctx.session_id),
                verify_exit_code=verify.exit_code,
            ),
            cfg.snapshot_timeout_seconds,
        )
        if not snapshot.success:
            return self._fail(job_id, f"Snapshot failed: {snapshot.error}", action="snapshot",
                              result=snapshot.to_dict())

        if self._reviews is None or not self._reviews.is_configured(self.credential):
            return self._update_status(job_id, JobStatus.WAITING_APPROVAL, action="snapshot",
                                       result=snapshot.to_dict(),
                                       latest_snapshot_id=snapshot.snapshot_id)

        self._update_status(job_id, JobStatus.REVIEWING, action="snapshot",
                            result=snapshot.to_dict(), latest_snapshot_id=snapshot.snapshot_id)
        outcome = await self._bounded(
            "Review",
            self._reviews.review(job_id, snapshot.snapshot_id, self.credential),
            cfg.review_timeout_seconds,
        )
        if not outcome.success:
            return self._fail(job_id, f"Review API failed: {outcome.error}", action="review",
                              result={"error": outcome.error})
        return self.handle_review_decision(job_id, outcome.result)

    async def _bounded(self, phase: str, coro, timeout: float):
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            raise PhaseTimeoutError(phase, timeout) from e

    def handle_review_decision(self, job_id: str, result: ReviewResult) -> Job:
        """Apply the decision gate to a review result."""
        job = self.get_job(job_id)
        review_history = job.review_history + [{
            "snapshot_id": job.latest_snapshot_id,
            "timestamp": time.time(),
            "result": result.to_dict(),
        }]
        common = {"review_result": result, "review_history": review_history}
        outcome = decide(result.decision, result.achieved_level,
                         job.auto_fix_count, self.config.max_auto_fixes, result.summary)

        if outcome.status is JobStatus.COMPLETED:
            return self._update_status(job_id, JobStatus.COMPLETED, action="review",
                                       result=result.to_dict(), **common)
        if outcome.status is JobStatus.FAILED:
            return self._fail(job_id, outcome.reason, action="review",
                              result=result.to_dict(), **common)

        ctx = self._context_for(job)
        if not self._sessions.is_alive(ctx.session_id):
            return self._fail(job_id, "Session is no longer running", action="review",
                              result=result.to_dict(), **common)

        job = self._update_status(job_id, JobStatus.FIXING, action="review",
                                  result=result.to_dict(),
                                  auto_fix_count=job.auto_fix_count + 1, **common)
        logger.info(f"Job {job_id}: {outcome.reason}")
        return self._send_fix(ctx, compose_fix_prompt(result)) or job

    def _send_fix(self, ctx: JobContext, prompt: str) -> Job | None:
        """Write a fix prompt and re-arm the idle callback. Returns the failed job on a dead session."""
        if not self._sessions.write(ctx.session_id, prompt + "\r"):
            return self._fail(ctx.job_id, "Session is no longer running", action="fix_prompt")
        self._sessions.set_idle_callback(ctx.session_id, functools.partial(self._on_idle, ctx.job_id))
        return None

    # --- Manual actions ---

    async def handle_user_action(self, job_id: str, action: str) -> dict:
        """Resume a waiting or failed job: approve, fix or retry."""
        job = self._store.get(job_id)
        if job is None:
            return {"success": False, "error": f"Job '{job_id}' not found"}
        if action not in USER_ACTIONS:
            return {"success": False, "error": f"Unknown action '{action}'"}
        if job.status not in RESUMABLE_STATES:
            return {"success": False,
                    "error": f"Cannot {action} job in state {job.status.value}"}

        if action == "approve":
            job = self._update_status(job_id, JobStatus.COMPLETED, action="user_approve",
                                      failure_reason=None)
        elif action == "fix":
            ctx = self._context_for(job)
            if not self._sessions.is_alive(ctx.session_id):
                return {"success": False, "error": "Session is no longer running"}
            prompt = compose_fix_prompt(job.review_result) if job.review_result else GENERIC_FIX_PROMPT
            job = self._update_status(job_id, JobStatus.FIXING, action="user_fix",
                                      failure_reason=None)
            failed = self._send_fix(ctx, prompt)
            if failed is not None:
                return {"success": False, "error": failed.failure_reason, "job": failed.to_dict()}
        else:
            job = self._update_status(job_id, JobStatus.RUNNING, action="user_retry",
                                      failure_reason=None)
            self._spawn(self.advance_loop(job_id))

        return {"success": True, "job": job.to_dict()}

    # --- Sessions ---

    def _context_for(self, job: Job) -> JobContext:
        ctx = self._contexts.get(job.id)
        if ctx is None:
            ctx = JobContext(job.id, session_id=job.session_id)
            self._contexts[job.id] = ctx
        return ctx

    def _on_session_event(self, event: str, session_id: str, payload: dict) -> None:
        if event != "exit":
            return
        code = payload.get("exit_code")
        for ctx in list(self._contexts.values()):
            if ctx.session_id != session_id or ctx.advancing:
                continue
            job = self._store.get(ctx.job_id)
            if job is None or job.status not in AGENT_ACTIVE_STATES:
                continue
            label = f"code {code}" if code is not None else f"signal {payload.get('signal')}"
            self._fail(ctx.job_id, f"Session exited unexpectedly ({label})",
                       action="session_exit", result=payload)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Cancel background rounds and terminate sessions this orchestrator spawned."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        # Shutdown leaves job records as they were; only unexpected exits fail a job.
        self._sessions.remove_listener(self._on_session_event)
        for ctx in self._contexts.values():
            if ctx.owns_session and ctx.session_id:
                self._sessions.terminate(ctx.session_id)
