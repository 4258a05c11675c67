"""Review decision gate."""

from __future__ import annotations

from dataclasses import dataclass

from autoloop.models import AchievedLevel, Decision, JobStatus

MAX_FIX_REASON = "Max auto-fix limit reached"


@dataclass(frozen=True)
class GateOutcome:
    """Next orchestrator state for a review decision."""

    status: JobStatus
    reason: str | None = None

    @property
    def wants_fix(self) -> bool:
        return self.status is JobStatus.FIXING


def decide(
    decision: Decision,
    achieved_level: AchievedLevel,
    fix_count: int,
    max_fixes: int,
    summary: str = "",
) -> GateOutcome:
    """Map a review decision and the remaining fix budget to the next state.

    Pure: the caller owns the counter and applies the outcome.
    """
    if decision in (Decision.APPROVE, Decision.EXCELLENT):
        return GateOutcome(JobStatus.COMPLETED, f"{decision.value} at level {achieved_level.value}")
    if decision is Decision.IMPROVE:
        if fix_count < max_fixes:
            return GateOutcome(JobStatus.FIXING, f"Auto-fix {fix_count + 1}/{max_fixes}")
        return GateOutcome(JobStatus.FAILED, MAX_FIX_REASON)
    return GateOutcome(JobStatus.FAILED, f"Review blocked: {summary}" if summary else "Review blocked")
