"""Tests for fix prompts and fix-job descriptions."""

from autoloop.models import (
    AchievedLevel,
    Decision,
    MissingRequirements,
    ReviewIssue,
    ReviewResult,
    Severity,
)
from autoloop.prompts import compose_fix_job_description, compose_fix_prompt


def _result(**kwargs):
    defaults = {"decision": Decision.IMPROVE, "achieved_level": AchievedLevel.MINIMUM,
                "summary": "Needs error handling"}
    defaults.update(kwargs)
    return ReviewResult(**defaults)


class TestFixPrompt:
    def test_issues_listed_with_evidence(self):
        result = _result(issues=[
            ReviewIssue(Severity.MAJOR, "No error handling", evidence="api.js:40"),
            ReviewIssue(Severity.MINOR, "Unused import"),
        ])
        assert compose_fix_prompt(result) == (
            "Review Feedback (Level minimum):\n"
            "- [major] No error handling: api.js:40\n"
            "- [minor] Unused import\n\n"
            "Please fix these issues to reach the next level."
        )

    def test_falls_back_to_missing_requirements(self):
        result = _result(missing=MissingRequirements(minimum=["Compiles"], middle=["Tests pass"],
                                                     maximum=["Docs"]))
        prompt = compose_fix_prompt(result)
        assert "- Compiles\n- Tests pass\n" in prompt
        assert "Docs" not in prompt

    def test_falls_back_to_summary(self):
        prompt = compose_fix_prompt(_result())
        assert "\n- Needs error handling\n" in prompt


class TestFixJobDescription:
    def test_full_description(self):
        result = _result(
            decision=Decision.BLOCK,
            achieved_level=AchievedLevel.NONE,
            summary="Minimum not met",
            missing=MissingRequirements(minimum=["Input validated"], middle=["Tests added"]),
            issues=[ReviewIssue(Severity.CRITICAL, "SQL injection", evidence="db.js:7")],
        )
        assert compose_fix_job_description("job-1", result) == (
            "[Fix] Review Feedback (BLOCK - Level none)\n\n"
            "Parent Job: job-1\n"
            "Summary: Minimum not met\n\n"
            "MUST FIX (Minimum):\n- Input validated\n\n"
            "SHOULD FIX (Middle):\n- Tests added\n\n"
            "ISSUES:\n- [critical] SQL injection\n\n"
            "Verify profile: lint+test"
        )

    def test_empty_sections_omitted(self):
        desc = compose_fix_job_description("job-2", _result())
        assert "MUST FIX" not in desc
        assert "ISSUES" not in desc
        assert desc.endswith("Summary: Needs error handling\n\nVerify profile: lint+test")
