"""Judge pass: a read-only agent call that returns a structured verdict."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from .agent import collect_response
from .errors import FeatureAbortedError
from .models import JudgeResult, JudgeVerdict
from .prompts import build_judge_prompt

if TYPE_CHECKING:
    from .agent import AgentClient, CancellationToken
    from .models import Feature, QualityGateResult, Task

logger = logging.getLogger("orchestrator")

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")


def extract_json(text: str) -> str | None:
    """Pull a JSON object out of free text: a fenced block first, else the first balanced braces."""
    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        return fenced.group(1)

    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_judge_response(text: str) -> JudgeResult:
    """Parse a judge reply. Anything unparsable becomes ``revise``."""
    raw = extract_json(text)
    if raw is None:
        return JudgeResult(verdict=JudgeVerdict.REVISE, issues=["Judge response could not be parsed."])
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return JudgeResult(verdict=JudgeVerdict.REVISE, issues=["Judge response could not be parsed."])
    if not isinstance(data, dict):
        return JudgeResult(verdict=JudgeVerdict.REVISE, issues=["Judge response could not be parsed."])

    verdict_raw = data.get("verdict")
    try:
        verdict = JudgeVerdict(verdict_raw.lower()) if isinstance(verdict_raw, str) else JudgeVerdict.REVISE
    except ValueError:
        verdict = JudgeVerdict.REVISE

    issues = data.get("issues")
    recommendations = data.get("recommendations")
    confidence = data.get("confidence")
    return JudgeResult(
        verdict=verdict,
        issues=[i for i in issues if isinstance(i, str)] if isinstance(issues, list) else [],
        recommendations=(
            [r for r in recommendations if isinstance(r, str)] if isinstance(recommendations, list) else []
        ),
        confidence=confidence if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) else None,
    )


async def evaluate(
    client: AgentClient,
    feature: Feature,
    tasks: list[Task],
    quality: list[QualityGateResult],
    agent_output: str,
    model: str,
    working_dir: Path,
    system_prompt: str | None = None,
    cancellation: CancellationToken | None = None,
) -> JudgeResult:
    """Ask the judge model for a verdict. A failed call is treated as ``revise``."""
    prompt = build_judge_prompt(feature, tasks, quality, agent_output)
    try:
        text = await collect_response(
            client.execute(
                prompt,
                model=model,
                working_dir=working_dir,
                system_prompt=system_prompt,
                cancellation=cancellation,
                read_only=True,
            ),
            feature.id,
        )
    except FeatureAbortedError:
        raise
    except Exception as e:
        logger.warning(f"Judge evaluation failed for {feature.id}: {e}")
        return JudgeResult(verdict=JudgeVerdict.REVISE, issues=["Judge evaluation failed."])

    result = parse_judge_response(text)
    logger.info(f"  Judge verdict for {feature.id}: {result.verdict.value} ({len(result.issues)} issues)")
    return result
