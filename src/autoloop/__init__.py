"""autoloop: unattended verify / snapshot / review loop around an interactive coding agent."""

__version__ = "0.1.0"

from autoloop.config import AutoloopConfig
from autoloop.decision import decide
from autoloop.events import EventCollector
from autoloop.models import Decision, Job, JobStatus, ReviewResult
from autoloop.orchestrator import JobOrchestrator
from autoloop.reviewers import REVIEWER_REGISTRY, ReviewService
from autoloop.sessions import PtyProcess, SessionManager
from autoloop.snapshots import SnapshotWriter
from autoloop.store import JobRepository, JobStore
from autoloop.verify import VerifyRunner

__all__ = [
    "AutoloopConfig",
    "decide",
    "EventCollector",
    "Decision",
    "Job",
    "JobStatus",
    "ReviewResult",
    "JobOrchestrator",
    "REVIEWER_REGISTRY",
    "ReviewService",
    "PtyProcess",
    "SessionManager",
    "SnapshotWriter",
    "JobRepository",
    "JobStore",
    "VerifyRunner",
]
