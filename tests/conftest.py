"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable

import pytest

from feature_orchestrator.agent import AgentClient, AgentEvent
from feature_orchestrator.config import OrchestratorConfig, QualityCheck
from feature_orchestrator.errors import FeatureAbortedError
from feature_orchestrator.events import EventBus, EventRecorder
from feature_orchestrator.models import Feature
from feature_orchestrator.state import FeatureStore

PASS_VERDICT = '{"verdict": "pass", "issues": [], "recommendations": [], "confidence": 0.9}'


def default_responder(prompt: str, call: dict[str, Any]) -> str:
    if call["read_only"]:
        return PASS_VERDICT
    return "Implemented the change.\n<summary>Did the work.</summary>"


class FakeAgentClient(AgentClient):
    """Scripted agent. ``responder(prompt, call)`` returns text, a list of events,
    or an awaitable of either. Every call is recorded in ``calls``."""

    def __init__(self, responder: Callable[[str, dict[str, Any]], Any] | None = None):
        self.responder = responder or default_responder
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        prompt,
        model,
        working_dir,
        system_prompt=None,
        cancellation=None,
        mcp_servers=None,
        allowed_tools=None,
        max_turns=None,
        read_only=False,
    ):
        call = {
            "prompt": prompt,
            "model": model,
            "working_dir": working_dir,
            "system_prompt": system_prompt,
            "max_turns": max_turns,
            "read_only": read_only,
        }
        self.calls.append(call)
        reply = self.responder(prompt, call)
        if inspect.isawaitable(reply):
            reply = await reply

        if isinstance(reply, str):
            events = [AgentEvent.text_block(reply), AgentEvent.result()]
        else:
            events = list(reply)

        for event in events:
            if cancellation is not None and cancellation.cancelled:
                raise FeatureAbortedError("Feature execution aborted")
            yield event
            await asyncio.sleep(0)

    def prompts(self) -> list[str]:
        return [c["prompt"] for c in self.calls]


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """A project directory that is not a git repository."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def config(tmp_project: Path) -> OrchestratorConfig:
    return OrchestratorConfig(
        project_dir=tmp_project,
        structured_log=False,
        use_worktrees=False,
        quality_checks=[QualityCheck(name="Check", command="true")],
        loop_interval_seconds=0.01,
        idle_interval_seconds=0.01,
        capacity_wait_seconds=0.01,
        quality_check_timeout_seconds=10,
        approval_handoff_poll_seconds=0.01,
    )


@pytest.fixture
def store(config: OrchestratorConfig) -> FeatureStore:
    return FeatureStore(config.state_dir)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(events: EventBus) -> EventRecorder:
    rec = EventRecorder()
    events.subscribe(rec)
    return rec


@pytest.fixture
def fake_client() -> FakeAgentClient:
    return FakeAgentClient()


@pytest.fixture
def make_feature(store: FeatureStore) -> Callable[..., Feature]:
    def _make(feature_id: str = "feat-1", **fields: Any) -> Feature:
        fields.setdefault("title", f"Feature {feature_id}")
        fields.setdefault("description", f"Implement {feature_id}")
        feature = Feature(id=feature_id, **fields)
        store.save_feature(feature)
        return feature

    return _make


@pytest.fixture
def client_factory() -> type[FakeAgentClient]:
    """Build a FakeAgentClient with a custom responder inside a test."""
    return FakeAgentClient
