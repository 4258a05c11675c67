"""Core data model: jobs, review results and phase results."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(Enum):
    """Job state machine states."""

    IDLE = "idle"
    RUNNING = "running"
    VERIFYING = "verifying"
    SNAPSHOTTING = "snapshotting"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_APPROVAL = "waiting_approval"
    FIXING = "fixing"


# States in which the agent is expected to be working inside its session
AGENT_ACTIVE_STATES = {JobStatus.RUNNING, JobStatus.FIXING}

# States a manual action (approve / fix / retry) can resume from
RESUMABLE_STATES = {JobStatus.WAITING_APPROVAL, JobStatus.FAILED}

TERMINAL_STATES = {JobStatus.COMPLETED, JobStatus.FAILED}


class Decision(Enum):
    """Reviewer verdict."""

    BLOCK = "BLOCK"
    IMPROVE = "IMPROVE"
    APPROVE = "APPROVE"
    EXCELLENT = "EXCELLENT"


class AchievedLevel(Enum):
    """How much of the capability contract is met."""

    NONE = "none"
    MINIMUM = "minimum"
    MIDDLE = "middle"
    MAXIMUM = "maximum"


class Severity(Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _enum_or_default(enum_cls, value, default):
    """Coerce a raw value into an enum member, falling back to default."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        if isinstance(value, str):
            for candidate in (value.upper(), value.lower()):
                try:
                    return enum_cls(candidate)
                except ValueError:
                    continue
        return default


@dataclass
class ReviewIssue:
    """A single reviewer finding."""

    severity: Severity
    title: str
    evidence: str = ""
    suggestion: str = ""

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "title": self.title,
            "evidence": self.evidence,
            "suggestion": self.suggestion,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ReviewIssue:
        return cls(
            severity=_enum_or_default(Severity, data.get("severity"), Severity.MINOR),
            title=str(data.get("title") or "Untitled issue"),
            evidence=str(data.get("evidence") or ""),
            suggestion=str(data.get("suggestion") or data.get("suggested_fix") or ""),
        )


@dataclass
class MissingRequirements:
    """Unmet requirement names per capability level."""

    minimum: list[str] = field(default_factory=list)
    middle: list[str] = field(default_factory=list)
    maximum: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"minimum": list(self.minimum), "middle": list(self.middle), "maximum": list(self.maximum)}

    @classmethod
    def from_dict(cls, data: dict | None) -> MissingRequirements:
        data = data or {}
        return cls(
            minimum=[str(m) for m in data.get("minimum") or []],
            middle=[str(m) for m in data.get("middle") or []],
            maximum=[str(m) for m in data.get("maximum") or []],
        )


@dataclass
class RiskRating:
    """Three-axis risk rating."""

    security: RiskLevel = RiskLevel.LOW
    correctness: RiskLevel = RiskLevel.LOW
    maintainability: RiskLevel = RiskLevel.LOW

    def to_dict(self) -> dict:
        return {
            "security": self.security.value,
            "correctness": self.correctness.value,
            "maintainability": self.maintainability.value,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> RiskRating:
        data = data or {}
        return cls(
            security=_enum_or_default(RiskLevel, data.get("security"), RiskLevel.LOW),
            correctness=_enum_or_default(RiskLevel, data.get("correctness"), RiskLevel.LOW),
            maintainability=_enum_or_default(RiskLevel, data.get("maintainability"), RiskLevel.LOW),
        )


@dataclass
class ReviewResult:
    """Structured reviewer decision for one snapshot."""

    decision: Decision
    achieved_level: AchievedLevel = AchievedLevel.NONE
    summary: str = ""
    missing: MissingRequirements = field(default_factory=MissingRequirements)
    issues: list[ReviewIssue] = field(default_factory=list)
    risk: RiskRating = field(default_factory=RiskRating)

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "achieved_level": self.achieved_level.value,
            "summary": self.summary,
            "missing": self.missing.to_dict(),
            "issues": [i.to_dict() for i in self.issues],
            "risk": self.risk.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ReviewResult:
        """Build from either the stored shape or a reviewer's camelCase reply."""
        level = data.get("achieved_level", data.get("achievedLevel"))
        return cls(
            decision=_enum_or_default(Decision, data.get("decision"), Decision.BLOCK),
            achieved_level=_enum_or_default(AchievedLevel, level, AchievedLevel.NONE),
            summary=str(data.get("summary") or "No summary provided"),
            missing=MissingRequirements.from_dict(data.get("missing")),
            issues=[ReviewIssue.from_dict(i) for i in data.get("issues") or [] if isinstance(i, dict)],
            risk=RiskRating.from_dict(data.get("risk")),
        )


@dataclass
class HistoryEntry:
    """One append-only job history record."""

    action: str
    result: Any = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "action": self.action, "result": self.result}

    @classmethod
    def from_dict(cls, data: dict) -> HistoryEntry:
        return cls(
            action=data.get("action", ""),
            result=data.get("result"),
            timestamp=data.get("timestamp", 0.0),
        )


@dataclass
class Job:
    """One unit of agent-driven work tracked through the phase state machine."""

    id: str
    description: str
    status: JobStatus = JobStatus.IDLE
    workspace: str = ""
    history: list[HistoryEntry] = field(default_factory=list)
    latest_snapshot_id: str | None = None
    review_result: ReviewResult | None = None
    review_history: list[dict] = field(default_factory=list)
    auto_fix_count: int = 0
    failure_reason: str | None = None
    session_id: str | None = None
    parent_job_id: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "workspace": self.workspace,
            "history": [h.to_dict() for h in self.history],
            "latest_snapshot_id": self.latest_snapshot_id,
            "review_result": self.review_result.to_dict() if self.review_result else None,
            "review_history": list(self.review_history),
            "auto_fix_count": self.auto_fix_count,
            "failure_reason": self.failure_reason,
            "session_id": self.session_id,
            "parent_job_id": self.parent_job_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Job:
        review = data.get("review_result")
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            status=JobStatus(data.get("status", "idle")),
            workspace=data.get("workspace", ""),
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            latest_snapshot_id=data.get("latest_snapshot_id"),
            review_result=ReviewResult.from_dict(review) if review else None,
            review_history=list(data.get("review_history") or []),
            auto_fix_count=data.get("auto_fix_count", 0),
            failure_reason=data.get("failure_reason"),
            session_id=data.get("session_id"),
            parent_job_id=data.get("parent_job_id"),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )


# --- Phase results ---


@dataclass
class VerifyResult:
    """Outcome of an allow-listed verification command."""

    success: bool
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
            "error": self.error,
        }


@dataclass
class SnapshotResult:
    """Outcome of a snapshot capture."""

    success: bool
    snapshot_id: str | None = None
    summary: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "snapshot_id": self.snapshot_id,
            "summary": self.summary,
            "error": self.error,
        }


@dataclass
class ReviewOutcome:
    """Outcome of a review call."""

    success: bool
    result: ReviewResult | None = None
    error: str | None = None
