"""
Agent loop: model ↔ sandbox tool-use cycle for one comparison panel.

One ``AgentLoop.run()`` call serves one request for one mode. It borrows
the (session, mode) sandbox from the pool, uploads the request's files,
then alternates model calls and code executions until the model answers
without requesting a tool or the iteration cap is hit. Every intermediate
artifact is yielded as a StreamedEvent as soon as it exists.

Stream shape:
    (text | code (output | error | image)*)* [cap_reached] done
or, when the model call (or setup) fails:
    ... error

Tool calls from one model response run strictly in order, each awaiting
the previous; later code may depend on state left by earlier code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable

import config
from sandbox.handle import ExecutionOutcome, SandboxHandle
from sandbox.pool import SandboxPool

from . import events
from .events import StreamedEvent
from .llm import LLMAdapter, TextBlock, ToolCall
from .logging import set_request_context, tagged
from .prompts import UnknownModeError, get_system_prompt
from .tool_results import normalize_outcome
from .tools import EXECUTE_PYTHON, get_function_schemas
from .turn_limits import get_limit

logger = logging.getLogger("spinel")

SystemPromptProvider = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class UploadedFile:
    """A user file destined for ``/home/user/{name}`` in the sandbox."""
    name: str
    data: bytes


@dataclass
class RunStats:
    """Counters for one run. Pass an instance to ``AgentLoop.run`` to read them."""
    iterations: int = 0
    tool_calls: int = 0
    cap_reached: bool = False
    failed: bool = False
    rate_limited: bool = False
    usage: dict[str, int] = field(default_factory=lambda: {"input_tokens": 0, "output_tokens": 0})


class AgentLoop:
    """Drives the bounded tool-use loop and yields the event stream.

    Args:
        adapter: LLM provider adapter.
        pool: Sandbox pool shared by all requests.
        model: Model identifier. Defaults to ``config.MODEL``.
        max_tokens: Output token cap per model call.
        max_iterations: Hard cap on model calls per request. Defaults to
            ``agent.max_iterations``.
        system_prompt_provider: ``async (mode) -> str``. Defaults to
            :func:`agent.prompts.get_system_prompt`.
    """

    def __init__(
        self,
        adapter: LLMAdapter,
        pool: SandboxPool,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        max_iterations: int | None = None,
        system_prompt_provider: SystemPromptProvider | None = None,
    ):
        self.adapter = adapter
        self.pool = pool
        self.model = model or config.MODEL
        self.max_tokens = max_tokens or config.MAX_TOKENS
        self.max_iterations = (
            max_iterations if max_iterations is not None else get_limit("agent.max_iterations")
        )
        self._system_prompt = system_prompt_provider or get_system_prompt
        self._tools = get_function_schemas()

    async def run(
        self,
        messages: list[dict],
        mode: str,
        session_id: str,
        files: Iterable[UploadedFile] = (),
        stats: RunStats | None = None,
    ) -> AsyncIterator[StreamedEvent]:
        """Run one request and yield its events.

        Exactly one terminal event ends the stream: ``done`` on success
        (including cap exhaustion, preceded by ``cap_reached``) or a fatal
        ``error`` when setup or a model call fails. Execution errors are
        ordinary events and the loop continues after them.

        Args:
            stats: Optional per-run counters, filled in as the run goes.
        """
        stats = stats if stats is not None else RunStats()
        set_request_context(session_id, mode)
        try:
            if mode not in config.MODES:
                raise UnknownModeError(f"Unknown mode: {mode!r}")
            handle = await self.pool.acquire(session_id, mode)
            async with handle.borrow():
                for f in files:
                    await handle.write_file(f.name, f.data)
                system_prompt = await self._system_prompt(mode)
                async for event in self._loop(handle, list(messages), system_prompt, stats):
                    yield event
        except Exception as e:
            stats.failed = True
            message = str(e) or type(e).__name__
            if self.adapter.is_quota_error(e):
                stats.rate_limited = True
                logger.warning("Model rate limit hit: %s", e, extra=tagged("error"))
                message = f"Rate limited by the model provider: {message}"
            else:
                logger.error("Agent run failed: %s", e, exc_info=True, extra=tagged("error"))
            yield events.fatal(message)
            return

        logger.info(
            "Run finished: %d iteration(s), %d tool call(s)%s",
            stats.iterations, stats.tool_calls,
            " (cap reached)" if stats.cap_reached else "",
            extra=tagged("run"),
        )
        yield events.done()

    async def _loop(
        self,
        handle: SandboxHandle,
        history: list[dict],
        system_prompt: str,
        stats: RunStats,
    ) -> AsyncIterator[StreamedEvent]:
        for _ in range(self.max_iterations):
            stats.iterations += 1
            response = await self.adapter.create_message(
                self.model,
                system_prompt,
                history,
                self._tools,
                max_tokens=self.max_tokens,
            )
            stats.usage["input_tokens"] += response.usage.input_tokens
            stats.usage["output_tokens"] += response.usage.output_tokens

            tool_results: list[dict] = []
            for block in response.blocks:
                if isinstance(block, TextBlock):
                    if block.text:
                        yield events.text(block.text)
                elif isinstance(block, ToolCall):
                    stats.tool_calls += 1
                    code = block.args.get("code")
                    if not isinstance(code, str):
                        code = "" if code is None else str(code)
                    yield events.code(code)
                    outcome = await self._execute(handle, block, code)
                    tool_events, summary = normalize_outcome(outcome)
                    for event in tool_events:
                        yield event
                    tool_results.append(
                        self.adapter.make_tool_result_message(summary, tool_call_id=block.id)
                    )

            if not tool_results:
                return

            history.append({"role": "assistant", "content": response.content})
            history.append({"role": "user", "content": tool_results})

        stats.cap_reached = True
        logger.warning(
            "Iteration cap (%d) reached with tool calls pending", self.max_iterations,
            extra=tagged("run"),
        )
        yield events.cap_reached(self.max_iterations)

    async def _execute(self, handle: SandboxHandle, call: ToolCall, code: str) -> ExecutionOutcome:
        if call.name != EXECUTE_PYTHON:
            return ExecutionOutcome(error=f"Unknown tool: {call.name}")
        if not code.strip():
            return ExecutionOutcome(error="No code provided")
        return await handle.execute(code)
