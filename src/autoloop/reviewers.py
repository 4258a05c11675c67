"""Snapshot review against a capability contract.

A reviewer reads a snapshot (diff, terminal tail, manifest, optional contract)
and returns a structured ReviewResult. Variants:

- anthropic: Anthropic Messages API
- gemini: Google generateContent API
- openai: OpenAI chat completions with JSON response format
- claude-sdk: Claude Agent SDK query() using the local CLI login
- tiered: Gemini first, escalating to Anthropic unless Gemini approves
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from claude_agent_sdk import AssistantMessage, ClaudeAgentOptions, ClaudeSDKError, TextBlock, query

from autoloop.config import ReviewerConfig
from autoloop.exceptions import ConfigError, ReviewerError
from autoloop.models import (
    AchievedLevel,
    Decision,
    ReviewIssue,
    ReviewOutcome,
    ReviewResult,
    RiskLevel,
    RiskRating,
    Severity,
)
from autoloop.snapshots import SnapshotData, SnapshotWriter

logger = logging.getLogger(__name__)

DIFF_LIMIT = 15000
LOG_TAIL = 3000

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"

REVIEWER_SYSTEM_PROMPT = """You are a Senior Code Reviewer implementing a 3-tier Capability Level judgment system.

## Your Mission
Evaluate the provided Snapshot (diff/logs) against the Contract's Capability Levels.
Your judgment must be OBJECTIVE and based ONLY on:
1. The Contract's defined levels (minimum/middle/maximum)
2. Evidence from the Snapshot (diff/logs)

## Decision Rules (CRITICAL)

R1: Minimum not met -> BLOCK
- If ANY minimum requirement is missing -> decision = "BLOCK"
- Exception: If manifest.completeness == "partial", use "IMPROVE" instead (request re-snapshot)
- Exception: Security risks (credential leaks, etc.) -> always "BLOCK"

R2: Minimum met, Middle not met -> IMPROVE
- All minimum requirements met but middle requirements missing
- Goal is to encourage reaching "usable" quality

R3: Middle met -> APPROVE
- All minimum AND middle requirements met
- Maximum items become "quality suggestions" (not blocking)

R4: Maximum met -> EXCELLENT
- All levels fully achieved
- Reserved for exceptional implementations

## Output Format (JSON only)
{
  "decision": "BLOCK" | "IMPROVE" | "APPROVE" | "EXCELLENT",
  "achievedLevel": "none" | "minimum" | "middle" | "maximum",
  "summary": "One-line summary of the review",
  "missing": {
    "minimum": ["list of unmet minimum requirements"],
    "middle": ["list of unmet middle requirements"],
    "maximum": ["list of unmet maximum requirements"]
  },
  "issues": [
    {
      "severity": "critical" | "major" | "minor",
      "title": "Issue title",
      "evidence": "Quote from diff/log proving the issue",
      "suggestion": "How to fix"
    }
  ],
  "risk": {
    "security": "low" | "medium" | "high",
    "correctness": "low" | "medium" | "high",
    "maintainability": "low" | "medium" | "high"
  }
}

## Important
- NEVER block based on "preferences" or "general best practices" alone
- ALWAYS cite evidence from the snapshot
- Evaluate ONLY against the contract's defined levels"""

DEFAULT_LEVELS = """
Contract: Not provided (use general code quality standards)
- MINIMUM: Code compiles, no security vulnerabilities, basic functionality works
- MIDDLE: Tests pass, code is readable, error handling exists
- MAXIMUM: Performance optimized, fully documented, edge cases handled
"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_user_prompt(snapshot: SnapshotData) -> str:
    if snapshot.contract:
        levels = snapshot.contract.levels
        contract_section = (
            f"\nContract ID: {snapshot.contract.id}\n\n"
            "Capability Levels:\n"
            f"- MINIMUM (must have): {json.dumps(levels.minimum)}\n"
            f"- MIDDLE (should have): {json.dumps(levels.middle)}\n"
            f"- MAXIMUM (nice to have): {json.dumps(levels.maximum)}\n"
        )
    else:
        contract_section = DEFAULT_LEVELS

    diff = snapshot.diff
    truncated = f"(Truncated: original was {len(diff)} chars)" if len(diff) > DIFF_LIMIT else ""

    return (
        f"{contract_section}\n"
        f"Manifest:\n{json.dumps(snapshot.manifest, indent=2)}\n\n"
        f"Git Diff:\n```diff\n{diff[:DIFF_LIMIT]}\n```\n{truncated}\n\n"
        f"Recent Logs:\n```\n{snapshot.logs[-LOG_TAIL:]}\n```\n\n"
        "Evaluate this snapshot against the capability levels. Return JSON only."
    )


def parse_review_json(text: str) -> ReviewResult:
    """Extract the reviewer's JSON object, filling defaults for missing fields.

    An unparseable reply is treated as a BLOCK so that a broken reviewer can
    never approve work.
    """
    match = _JSON_OBJECT.search(text or "")
    try:
        parsed = json.loads(match.group(0) if match else text)
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to parse reviewer output ({e}): {(text or '')[:200]}")
        return ReviewResult(
            decision=Decision.BLOCK,
            achieved_level=AchievedLevel.NONE,
            summary="Failed to parse model output",
            issues=[ReviewIssue(
                severity=Severity.CRITICAL,
                title="JSON Parse Error",
                evidence="N/A",
                suggestion="Check prompt and model output",
            )],
            risk=RiskRating(security=RiskLevel.HIGH),
        )
    return ReviewResult.from_dict(parsed)


# --- Reviewer variants ---


class Reviewer:
    """Base reviewer. Subclasses implement review()."""

    id = ""

    def __init__(self, config: ReviewerConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    def has_credential(self) -> bool:
        return False

    async def review(self, snapshot: SnapshotData, api_key: str | None = None) -> ReviewResult:
        raise NotImplementedError

    async def _post(self, url: str, payload: dict, headers: dict | None = None,
                    params: dict | None = None) -> Any:
        if self._client is not None:
            resp = await self._client.post(url, json=payload, headers=headers, params=params,
                                           timeout=self.config.http_timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.config.http_timeout_seconds) as client:
                resp = await client.post(url, json=payload, headers=headers, params=params)
        if resp.status_code >= 300:
            raise ReviewerError(f"{self.id} API error: {resp.status_code} {resp.text[:500]}")
        return resp.json()


class AnthropicReviewer(Reviewer):
    id = "anthropic"

    def has_credential(self) -> bool:
        return bool(self.config.anthropic_api_key)

    async def review(self, snapshot: SnapshotData, api_key: str | None = None) -> ReviewResult:
        key = api_key or self.config.anthropic_api_key
        if not key:
            raise ReviewerError("Anthropic API key not found")
        data = await self._post(
            ANTHROPIC_URL,
            {
                "model": self.config.anthropic_model,
                "max_tokens": self.config.max_tokens,
                "system": REVIEWER_SYSTEM_PROMPT,
                "messages": [{"role": "user", "content": build_user_prompt(snapshot)}],
            },
            headers={"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION},
        )
        try:
            text = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ReviewerError(f"Unexpected Anthropic response: {e}") from e
        return parse_review_json(text)


class GeminiReviewer(Reviewer):
    id = "gemini"

    def has_credential(self) -> bool:
        return bool(self.config.gemini_api_key)

    async def review(self, snapshot: SnapshotData, api_key: str | None = None) -> ReviewResult:
        key = api_key or self.config.gemini_api_key
        if not key:
            raise ReviewerError("Gemini API key not found")
        prompt = REVIEWER_SYSTEM_PROMPT + "\n\n" + build_user_prompt(snapshot)
        data = await self._post(
            GEMINI_URL.format(model=self.config.gemini_model),
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": 0.1},
            },
            params={"key": key},
        )
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ReviewerError(f"Unexpected Gemini response: {e}") from e
        return parse_review_json(text)


class OpenAIReviewer(Reviewer):
    id = "openai"

    def has_credential(self) -> bool:
        return bool(self.config.openai_api_key)

    async def review(self, snapshot: SnapshotData, api_key: str | None = None) -> ReviewResult:
        key = api_key or self.config.openai_api_key
        if not key:
            raise ReviewerError("OpenAI API key not found")
        data = await self._post(
            OPENAI_URL,
            {
                "model": self.config.openai_model,
                "messages": [
                    {"role": "system", "content": REVIEWER_SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(snapshot)},
                ],
                "response_format": {"type": "json_object"},
            },
            headers={"Authorization": f"Bearer {key}"},
        )
        try:
            text = data["choices"][0]["message"]["content"] or "{}"
        except (KeyError, IndexError, TypeError) as e:
            raise ReviewerError(f"Unexpected OpenAI response: {e}") from e
        return parse_review_json(text)


class ClaudeSdkReviewer(Reviewer):
    """Review through the Claude Agent SDK (authenticated by the local CLI)."""

    id = "claude-sdk"

    def has_credential(self) -> bool:
        return True

    async def review(self, snapshot: SnapshotData, api_key: str | None = None) -> ReviewResult:
        prompt = REVIEWER_SYSTEM_PROMPT + "\n\n" + build_user_prompt(snapshot)
        options = ClaudeAgentOptions(
            model=self.config.claude_sdk_model,
            max_turns=1,
            allowed_tools=[],
            permission_mode="bypassPermissions",
        )
        output = ""
        try:
            async for message in query(prompt=prompt, options=options):
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            output += block.text
        except ClaudeSDKError as e:
            raise ReviewerError(f"Claude SDK review failed: {e}") from e
        return parse_review_json(output)


class TieredReviewer(Reviewer):
    """Cheap model first; escalate unless it approves."""

    id = "tiered"

    def __init__(self, config: ReviewerConfig, client: httpx.AsyncClient | None = None):
        super().__init__(config, client)
        self.tier1 = GeminiReviewer(config, client)
        self.tier2 = AnthropicReviewer(config, client)

    def has_credential(self) -> bool:
        return self.tier2.has_credential()

    async def review(self, snapshot: SnapshotData, api_key: str | None = None) -> ReviewResult:
        try:
            first = await self.tier1.review(snapshot)
        except (ReviewerError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Tier 1 review failed, falling back to tier 2: {e}")
            return await self.tier2.review(snapshot, api_key=api_key)

        if first.decision in (Decision.APPROVE, Decision.EXCELLENT):
            logger.info("Tier 1 approved, skipping tier 2")
            first.summary = "[Tier 1] " + first.summary
            return first

        logger.info(f"Tier 1 decision was {first.decision.value}, escalating to tier 2")
        second = await self.tier2.review(snapshot, api_key=api_key)
        second.summary = f"[Tier 2 (was {first.decision.value})] " + second.summary
        return second


REVIEWER_REGISTRY: dict[str, type[Reviewer]] = {
    "anthropic": AnthropicReviewer,
    "gemini": GeminiReviewer,
    "openai": OpenAIReviewer,
    "claude-sdk": ClaudeSdkReviewer,
    "tiered": TieredReviewer,
}


class ReviewService:
    """Loads snapshots and runs the active reviewer on them."""

    def __init__(
        self,
        config: ReviewerConfig,
        snapshots: SnapshotWriter,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._snapshots = snapshots
        self._client = client
        self._reviewer = self._build(config.provider)

    @property
    def provider(self) -> str:
        return self._reviewer.id

    def _build(self, provider: str) -> Reviewer:
        reviewer_cls = REVIEWER_REGISTRY.get(provider)
        if reviewer_cls is None:
            raise ConfigError(f"Unknown reviewer provider '{provider}'")
        return reviewer_cls(self.config, self._client)

    def set_reviewer(self, provider: str) -> None:
        """Switch the active reviewer. Raises ConfigError for unknown providers."""
        self._reviewer = self._build(provider)
        self.config.provider = provider
        logger.info(f"Reviewer provider set to {provider}")

    def is_configured(self, credential: str | None = None) -> bool:
        return bool(credential) or self._reviewer.has_credential()

    async def review(self, job_id: str, snapshot_id: str, credential: str | None = None) -> ReviewOutcome:
        try:
            snapshot = self._snapshots.load_snapshot(job_id, snapshot_id)
            logger.info(f"Reviewing {snapshot_id} with {self._reviewer.id}")
            result = await self._reviewer.review(snapshot, api_key=credential)
        except (ReviewerError, FileNotFoundError, httpx.HTTPError, ValueError) as e:
            logger.error(f"Review of {snapshot_id} failed: {e}")
            return ReviewOutcome(success=False, error=str(e))
        return ReviewOutcome(success=True, result=result)
