"""Tests for judge response parsing and evaluation."""

from __future__ import annotations

from pathlib import Path

import pytest

from feature_orchestrator.agent import AgentEvent, CancellationToken
from feature_orchestrator.errors import FeatureAbortedError
from feature_orchestrator.judge import evaluate, extract_json, parse_judge_response
from feature_orchestrator.models import Feature, JudgeVerdict, QualityGateResult, Task


class TestExtractJson:
    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"verdict": "pass"}\n```\nthanks'
        assert extract_json(text) == '{"verdict": "pass"}'

    def test_first_balanced_braces(self):
        text = 'Verdict: {"verdict": "revise", "issues": [{"nested": 1}]} trailing {junk}'
        assert extract_json(text) == '{"verdict": "revise", "issues": [{"nested": 1}]}'

    def test_no_json(self):
        assert extract_json("looks good to me") is None


class TestParseJudgeResponse:
    def test_full_verdict(self):
        result = parse_judge_response(
            '{"verdict": "FAIL", "issues": ["wrong API"], "recommendations": ["redo"], "confidence": 0.4}'
        )
        assert result.verdict == JudgeVerdict.FAIL
        assert result.issues == ["wrong API"]
        assert result.recommendations == ["redo"]
        assert result.confidence == 0.4

    def test_unparsable_is_revise(self):
        result = parse_judge_response("I think it is fine")
        assert result.verdict == JudgeVerdict.REVISE
        assert result.issues == ["Judge response could not be parsed."]

    def test_unknown_verdict_is_revise(self):
        assert parse_judge_response('{"verdict": "maybe"}').verdict == JudgeVerdict.REVISE

    def test_ignores_non_string_issues(self):
        result = parse_judge_response('{"verdict": "pass", "issues": ["ok", 3], "confidence": true}')
        assert result.issues == ["ok"]
        assert result.confidence is None


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_read_only_call_with_excerpt(self, tmp_path: Path, client_factory):
        client = client_factory(lambda prompt, call: '{"verdict": "pass"}')
        feature = Feature(id="f1", title="Login", description="Add login")
        tasks = [Task(id=f"T{i:03d}", description=f"step {i}") for i in range(1, 26)]
        quality = [QualityGateResult(name="Tests", status="pass")]

        result = await evaluate(
            client, feature, tasks, quality, "x" * 7000 + "TAIL", model="sonnet", working_dir=tmp_path,
        )

        assert result.verdict == JudgeVerdict.PASS
        call = client.calls[0]
        assert call["read_only"] is True
        assert "T020" in call["prompt"]
        assert "T021" not in call["prompt"]
        assert "- Tests: pass" in call["prompt"]
        assert "x" * 6001 not in call["prompt"]
        assert "TAIL" in call["prompt"]

    @pytest.mark.asyncio
    async def test_agent_error_is_revise(self, tmp_path: Path, client_factory):
        client = client_factory(lambda prompt, call: [AgentEvent.error("overloaded")])
        result = await evaluate(client, Feature(id="f1"), [], [], "", model="sonnet", working_dir=tmp_path)
        assert result.verdict == JudgeVerdict.REVISE
        assert result.issues == ["Judge evaluation failed."]

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, tmp_path: Path, client_factory):
        token = CancellationToken()
        token.cancel()
        client = client_factory(lambda prompt, call: '{"verdict": "pass"}')

        with pytest.raises(FeatureAbortedError):
            await evaluate(
                client, Feature(id="f1"), [], [], "", model="sonnet", working_dir=tmp_path, cancellation=token,
            )
