"""Text written back into the agent session or into follow-up jobs."""

from autoloop.models import ReviewResult

GENERIC_FIX_PROMPT = (
    "Please review the current state of the workspace, fix any remaining problems "
    "and make sure lint and tests pass."
)


def _issue_line(severity: str, title: str, evidence: str = "") -> str:
    line = f"- [{severity}] {title}"
    if evidence:
        line += f": {evidence}"
    return line


def compose_fix_prompt(result: ReviewResult) -> str:
    """Corrective instruction for the agent, built from a review result."""
    lines = [_issue_line(i.severity.value, i.title, i.evidence) for i in result.issues]
    if not lines:
        lines = [f"- {name}" for name in result.missing.minimum + result.missing.middle]
    if not lines:
        lines = [f"- {result.summary}"]
    body = "\n".join(lines)
    return (
        f"Review Feedback (Level {result.achieved_level.value}):\n"
        f"{body}\n\n"
        "Please fix these issues to reach the next level."
    )


def compose_fix_job_description(parent_job_id: str, result: ReviewResult) -> str:
    """Description for a follow-up job created from a review result."""
    desc = (
        f"[Fix] Review Feedback ({result.decision.value} - Level {result.achieved_level.value})\n\n"
        f"Parent Job: {parent_job_id}\n"
        f"Summary: {result.summary}\n\n"
    )
    if result.missing.minimum:
        desc += "MUST FIX (Minimum):\n" + "\n".join(f"- {m}" for m in result.missing.minimum) + "\n\n"
    if result.missing.middle:
        desc += "SHOULD FIX (Middle):\n" + "\n".join(f"- {m}" for m in result.missing.middle) + "\n\n"
    if result.issues:
        desc += "ISSUES:\n" + "\n".join(
            _issue_line(i.severity.value, i.title) for i in result.issues
        ) + "\n\n"
    desc += "Verify profile: lint+test"
    return desc
