"""Tests for reviewer variants and the review service (HTTP mocked with httpx.MockTransport)."""

import json

import httpx
import pytest

import autoloop.reviewers as reviewers
from autoloop.config import ReviewerConfig
from autoloop.exceptions import ConfigError, ReviewerError
from autoloop.models import AchievedLevel, Decision, RiskLevel, Severity
from autoloop.reviewers import (
    DIFF_LIMIT,
    REVIEWER_REGISTRY,
    AnthropicReviewer,
    ClaudeSdkReviewer,
    GeminiReviewer,
    OpenAIReviewer,
    ReviewService,
    TieredReviewer,
    build_user_prompt,
    parse_review_json,
)
from autoloop.snapshots import Contract, ContractLevels, SnapshotData, SnapshotWriter

APPROVE = {"decision": "APPROVE", "achievedLevel": "middle", "summary": "Solid",
           "missing": {"maximum": ["docs"]}, "issues": [],
           "risk": {"security": "low", "correctness": "low", "maintainability": "medium"}}
IMPROVE = {"decision": "IMPROVE", "achievedLevel": "minimum", "summary": "Needs tests",
           "issues": [{"severity": "major", "title": "No tests", "evidence": "diff", "suggestion": "add"}]}


def snapshot(diff="+x = 1\n", contract=None):
    return SnapshotData(job_id="job-1", snapshot_id="S1", manifest={"snapshot_id": "S1"},
                        diff=diff, logs="npm run lint\nok", contract=contract)


def anthropic_body(review):
    return {"content": [{"type": "text", "text": json.dumps(review)}]}


def gemini_body(review):
    return {"candidates": [{"content": {"parts": [{"text": "```json\n" + json.dumps(review) + "\n```"}]}}]}


def openai_body(review):
    return {"choices": [{"message": {"content": json.dumps(review)}}]}


class Router:
    """MockTransport handler answering per host and recording requests."""

    def __init__(self, **responses):
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = request.url.host.split(".")[-2]  # anthropic / googleapis / openai
        status, body = self.responses[key]
        return httpx.Response(status, json=body)

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def config(**kwargs):
    return ReviewerConfig(anthropic_api_key="sk-ant", gemini_api_key="g-key",
                          openai_api_key="sk-oai", **kwargs)


class TestParseReviewJson:
    def test_extracts_embedded_object(self):
        result = parse_review_json("Here you go:\n" + json.dumps(APPROVE) + "\nThanks")
        assert result.decision is Decision.APPROVE
        assert result.achieved_level is AchievedLevel.MIDDLE
        assert result.missing.maximum == ["docs"]
        assert result.risk.maintainability is RiskLevel.MEDIUM

    def test_missing_fields_defaulted(self):
        result = parse_review_json('{"achievedLevel": "minimum"}')
        assert result.decision is Decision.BLOCK
        assert result.summary == "No summary provided"
        assert result.issues == []

    @pytest.mark.parametrize("text", ["no json at all", "{broken", "", "[1, 2]"])
    def test_unparseable_output_blocks(self, text):
        result = parse_review_json(text)
        assert result.decision is Decision.BLOCK
        assert result.achieved_level is AchievedLevel.NONE
        assert result.summary == "Failed to parse model output"
        assert result.issues[0].severity is Severity.CRITICAL
        assert result.issues[0].title == "JSON Parse Error"
        assert result.risk.security is RiskLevel.HIGH


class TestUserPrompt:
    def test_default_levels_without_contract(self):
        prompt = build_user_prompt(snapshot())
        assert "Contract: Not provided" in prompt
        assert "+x = 1" in prompt
        assert "npm run lint" in prompt

    def test_contract_levels(self):
        contract = Contract("c-1", ContractLevels(minimum=["Compiles"], middle=["Tests"]))
        prompt = build_user_prompt(snapshot(contract=contract))
        assert "Contract ID: c-1" in prompt
        assert '- MINIMUM (must have): ["Compiles"]' in prompt

    def test_long_diff_truncated(self):
        diff = "a" * (DIFF_LIMIT + 500)
        prompt = build_user_prompt(snapshot(diff=diff))
        assert f"(Truncated: original was {DIFF_LIMIT + 500} chars)" in prompt
        assert "a" * (DIFF_LIMIT + 1) not in prompt


class TestHttpReviewers:
    @pytest.mark.asyncio
    async def test_anthropic(self):
        router = Router(anthropic=(200, anthropic_body(APPROVE)))
        async with router.client() as client:
            result = await AnthropicReviewer(config(), client).review(snapshot())
        assert result.decision is Decision.APPROVE

        request = router.requests[0]
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        payload = json.loads(request.content)
        assert payload["model"] == "claude-3-5-sonnet-latest"
        assert payload["max_tokens"] == 1000
        assert "Capability Level" in payload["system"]

    @pytest.mark.asyncio
    async def test_explicit_credential_wins(self):
        router = Router(anthropic=(200, anthropic_body(APPROVE)))
        async with router.client() as client:
            await AnthropicReviewer(config(), client).review(snapshot(), api_key="sk-user")
        assert router.requests[0].headers["x-api-key"] == "sk-user"

    @pytest.mark.asyncio
    async def test_gemini_fenced_reply(self):
        router = Router(googleapis=(200, gemini_body(IMPROVE)))
        async with router.client() as client:
            result = await GeminiReviewer(config(), client).review(snapshot())
        assert result.decision is Decision.IMPROVE
        assert result.issues[0].suggestion == "add"
        request = router.requests[0]
        assert request.url.params["key"] == "g-key"
        assert "gemini-1.5-flash:generateContent" in request.url.path

    @pytest.mark.asyncio
    async def test_openai(self):
        router = Router(openai=(200, openai_body(APPROVE)))
        async with router.client() as client:
            result = await OpenAIReviewer(config(), client).review(snapshot())
        assert result.decision is Decision.APPROVE
        request = router.requests[0]
        assert request.headers["authorization"] == "Bearer sk-oai"
        assert json.loads(request.content)["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        router = Router(anthropic=(529, {"error": "overloaded"}))
        async with router.client() as client:
            with pytest.raises(ReviewerError, match="529"):
                await AnthropicReviewer(config(), client).review(snapshot())

    @pytest.mark.asyncio
    async def test_unexpected_shape_raises(self):
        router = Router(anthropic=(200, {"content": []}))
        async with router.client() as client:
            with pytest.raises(ReviewerError, match="Unexpected Anthropic response"):
                await AnthropicReviewer(config(), client).review(snapshot())

    @pytest.mark.asyncio
    async def test_missing_key_raises_without_request(self):
        router = Router()
        async with router.client() as client:
            with pytest.raises(ReviewerError, match="API key not found"):
                await OpenAIReviewer(ReviewerConfig(), client).review(snapshot())
        assert router.requests == []


class TestTieredReviewer:
    @pytest.mark.asyncio
    async def test_tier1_approval_is_final(self):
        router = Router(googleapis=(200, gemini_body(APPROVE)), anthropic=(200, anthropic_body(IMPROVE)))
        async with router.client() as client:
            result = await TieredReviewer(config(), client).review(snapshot())
        assert result.decision is Decision.APPROVE
        assert result.summary == "[Tier 1] Solid"
        assert len(router.requests) == 1

    @pytest.mark.asyncio
    async def test_escalates_unless_approved(self):
        router = Router(googleapis=(200, gemini_body(IMPROVE)), anthropic=(200, anthropic_body(APPROVE)))
        async with router.client() as client:
            result = await TieredReviewer(config(), client).review(snapshot())
        assert result.decision is Decision.APPROVE
        assert result.summary == "[Tier 2 (was IMPROVE)] Solid"
        assert len(router.requests) == 2

    @pytest.mark.asyncio
    async def test_tier1_failure_falls_back(self):
        router = Router(googleapis=(500, {"error": "down"}), anthropic=(200, anthropic_body(IMPROVE)))
        async with router.client() as client:
            result = await TieredReviewer(config(), client).review(snapshot())
        assert result.decision is Decision.IMPROVE
        assert result.summary == "Needs tests"

    def test_credential_follows_tier2(self):
        assert TieredReviewer(ReviewerConfig(anthropic_api_key="k")).has_credential()
        assert not TieredReviewer(ReviewerConfig(gemini_api_key="k")).has_credential()


class FakeAssistantMessage:
    def __init__(self, content):
        self.content = content


class FakeTextBlock:
    def __init__(self, text):
        self.text = text


class TestClaudeSdkReviewer:
    @pytest.mark.asyncio
    async def test_collects_assistant_text(self, monkeypatch):
        captured = {}

        async def fake_query(prompt, options):
            captured["prompt"] = prompt
            captured["options"] = options
            text = json.dumps(APPROVE)
            yield FakeAssistantMessage([FakeTextBlock(text[:20])])
            yield object()
            yield FakeAssistantMessage([FakeTextBlock(text[20:])])

        monkeypatch.setattr(reviewers, "query", fake_query)
        monkeypatch.setattr(reviewers, "AssistantMessage", FakeAssistantMessage)
        monkeypatch.setattr(reviewers, "TextBlock", FakeTextBlock)

        reviewer = ClaudeSdkReviewer(ReviewerConfig())
        assert reviewer.has_credential()
        result = await reviewer.review(snapshot())

        assert result.decision is Decision.APPROVE
        assert captured["options"].max_turns == 1
        assert captured["options"].allowed_tools == []
        assert "Git Diff" in captured["prompt"]


class TestReviewService:
    @pytest.fixture
    def writer(self, tmp_path):
        writer = SnapshotWriter(tmp_path)
        target = writer.snapshot_dir("job-1", "S1")
        target.mkdir(parents=True)
        (target / "git_diff.patch").write_text("+x\n")
        (target / "terminal_tail.txt").write_text("done")
        (target / "manifest.json").write_text('{"snapshot_id": "S1"}')
        return writer

    def test_registry_covers_providers(self):
        assert set(REVIEWER_REGISTRY) == {"anthropic", "gemini", "openai", "claude-sdk", "tiered"}

    def test_set_reviewer(self, writer):
        service = ReviewService(ReviewerConfig(), writer)
        service.set_reviewer("gemini")
        assert service.provider == "gemini"
        assert service.config.provider == "gemini"
        with pytest.raises(ConfigError):
            service.set_reviewer("llama")
        assert service.provider == "gemini"

    def test_is_configured(self, writer):
        service = ReviewService(ReviewerConfig(), writer)
        assert not service.is_configured()
        assert service.is_configured("sk-user")
        assert ReviewService(ReviewerConfig(provider="claude-sdk"), writer).is_configured()

    @pytest.mark.asyncio
    async def test_review_success(self, writer):
        router = Router(anthropic=(200, anthropic_body(APPROVE)))
        async with router.client() as client:
            service = ReviewService(config(), writer, client)
            outcome = await service.review("job-1", "S1")
        assert outcome.success is True
        assert outcome.result.decision is Decision.APPROVE
        assert "+x" in json.loads(router.requests[0].content)["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_review_failures_become_outcomes(self, writer):
        router = Router(anthropic=(500, {"error": "boom"}))
        async with router.client() as client:
            service = ReviewService(config(), writer, client)
            api_failure = await service.review("job-1", "S1")
            missing = await service.review("job-1", "S404")
        assert api_failure.success is False
        assert "500" in api_failure.error
        assert missing.success is False
        assert "Snapshot files not found" in missing.error
