"""Agent client contract and the Claude Agent SDK implementation.

An agent is an untrusted, slow, stream-based black box: given a prompt it
yields text / tool-use / thinking blocks, then a result (or an error). Every
call must stop promptly once its cancellation token fires.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
)
from pydantic import BaseModel, Field

from .errors import AgentError, FeatureAbortedError

logger = logging.getLogger("orchestrator")

READ_ONLY_DISALLOWED_TOOLS = ["Write", "Edit", "MultiEdit", "NotebookEdit", "Bash"]


class AgentEventKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    THINKING = "thinking"
    RESULT = "result"
    ERROR = "error"


class AgentEvent(BaseModel):
    """One item of an agent stream."""

    kind: AgentEventKind
    text: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] = Field(default_factory=dict)
    is_error: bool = False
    session_id: str | None = None
    cost_usd: float | None = None

    @classmethod
    def text_block(cls, text: str) -> AgentEvent:
        return cls(kind=AgentEventKind.TEXT, text=text)

    @classmethod
    def tool_use(cls, name: str, tool_input: dict[str, Any] | None = None) -> AgentEvent:
        return cls(kind=AgentEventKind.TOOL_USE, tool_name=name, tool_input=tool_input or {})

    @classmethod
    def result(cls, text: str = "", is_error: bool = False) -> AgentEvent:
        return cls(kind=AgentEventKind.RESULT, text=text, is_error=is_error)

    @classmethod
    def error(cls, message: str) -> AgentEvent:
        return cls(kind=AgentEventKind.ERROR, text=message, is_error=True)


class CancellationToken:
    """Propagated stop signal for one feature run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, message: str = "Feature execution aborted") -> None:
        if self._event.is_set():
            raise FeatureAbortedError(message)


class AgentClient(ABC):
    @abstractmethod
    def execute(
        self,
        prompt: str,
        model: str,
        working_dir: Path,
        system_prompt: str | None = None,
        cancellation: CancellationToken | None = None,
        mcp_servers: dict[str, dict[str, Any]] | None = None,
        allowed_tools: list[str] | None = None,
        max_turns: int | None = None,
        read_only: bool = False,
    ) -> AsyncIterator[AgentEvent]:
        """Execute a prompt and stream events. Finite and not restartable."""


async def collect_response(
    stream: AsyncIterator[AgentEvent],
    feature_id: str,
    on_text: Any = None,
) -> str:
    """Drain a stream into its text. Error events raise ``AgentError``.

    The result payload is only used when no text blocks were streamed, since
    it normally repeats the final assistant message. The stream is closed on
    every exit so the underlying session is torn down before this returns.
    """
    chunks: list[str] = []
    result_text = ""
    async with aclosing(stream) as events:
        async for event in events:
            if event.kind == AgentEventKind.TEXT and event.text:
                chunks.append(event.text)
                if on_text is not None:
                    on_text(event.text)
            elif event.kind == AgentEventKind.ERROR:
                raise AgentError(feature_id, event.text or "Unknown agent error")
            elif event.kind == AgentEventKind.RESULT:
                if event.is_error:
                    raise AgentError(feature_id, event.text or "Agent returned an error result")
                result_text = event.text
    return "".join(chunks) if chunks else result_text


def describe_tool_use(name: str, inp: dict[str, Any]) -> str:
    """One-line summary of a tool call for logs and agent output."""
    detail = ""
    if name in ("Read", "Edit", "Write"):
        detail = f" {inp.get('file_path', '')}"
    elif name == "Bash":
        cmd = inp.get("command", "")
        if len(cmd) > 80:
            cmd = cmd[:77] + "..."
        detail = f" $ {cmd}"
    elif name == "Glob":
        detail = f" {inp.get('pattern', '')}"
    elif name == "Grep":
        detail = f" /{inp.get('pattern', '')}/"
    elif name == "Task":
        detail = f" [{inp.get('subagent_type', '')}]"
    return f"{name}{detail}"


class ClaudeAgentClient(AgentClient):
    """Runs prompts through ``ClaudeSDKClient`` and maps SDK messages to ``AgentEvent``."""

    def __init__(
        self,
        permission_mode: str = "acceptEdits",
        allowed_tools: list[str] | None = None,
        max_turns: int = 200,
    ):
        self.permission_mode = permission_mode
        self.allowed_tools = allowed_tools or []
        self.max_turns = max_turns

    async def execute(
        self,
        prompt: str,
        model: str,
        working_dir: Path,
        system_prompt: str | None = None,
        cancellation: CancellationToken | None = None,
        mcp_servers: dict[str, dict[str, Any]] | None = None,
        allowed_tools: list[str] | None = None,
        max_turns: int | None = None,
        read_only: bool = False,
    ) -> AsyncIterator[AgentEvent]:
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        options = ClaudeAgentOptions(
            model=model,
            cwd=str(working_dir),
            system_prompt=system_prompt,
            permission_mode="default" if read_only else self.permission_mode,
            allowed_tools=[] if read_only else list(allowed_tools or self.allowed_tools),
            disallowed_tools=READ_ONLY_DISALLOWED_TOOLS if read_only else [],
            max_turns=1 if read_only else (max_turns or self.max_turns),
            mcp_servers=mcp_servers or {},
            setting_sources=["project"],
        )

        try:
            async with ClaudeSDKClient(options) as client:
                await client.query(prompt)

                watcher: asyncio.Task[None] | None = None
                if cancellation is not None:
                    watcher = asyncio.create_task(self._interrupt_on_cancel(client, cancellation))

                try:
                    async for message in client.receive_messages():
                        if cancellation is not None and cancellation.cancelled:
                            break
                        if isinstance(message, AssistantMessage):
                            for block in message.content:
                                if isinstance(block, TextBlock):
                                    yield AgentEvent.text_block(block.text)
                                elif isinstance(block, ToolUseBlock):
                                    yield AgentEvent.tool_use(block.name, block.input)
                                elif isinstance(block, ThinkingBlock):
                                    yield AgentEvent(kind=AgentEventKind.THINKING, text=block.thinking)
                        elif isinstance(message, ResultMessage):
                            yield AgentEvent(
                                kind=AgentEventKind.RESULT,
                                text=message.result or "",
                                is_error=message.is_error,
                                session_id=message.session_id,
                                cost_usd=message.total_cost_usd,
                            )
                            break
                finally:
                    if watcher is not None:
                        watcher.cancel()
                        try:
                            await watcher
                        except asyncio.CancelledError:
                            pass
        except ClaudeSDKError as e:
            logger.error(f"Agent SDK error: {type(e).__name__}: {e}")
            yield AgentEvent.error(f"{type(e).__name__}: {e}")
            return

        if cancellation is not None:
            cancellation.raise_if_cancelled()

    @staticmethod
    async def _interrupt_on_cancel(client: ClaudeSDKClient, token: CancellationToken) -> None:
        """Background task that interrupts the session once the token fires."""
        await token.wait()
        logger.info("  Cancellation requested, interrupting agent session")
        await client.interrupt()
