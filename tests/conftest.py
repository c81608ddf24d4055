from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Callable

import pytest

import config
from agent.llm import LLMAdapter, LLMResponse, TextBlock, ToolCall, UsageMetadata


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SPINEL_DIR", str(tmp_path / "spinel"))
    config._reset_data_dir()
    yield
    config._reset_data_dir()


# ---- Fake E2B sandbox ----


@dataclass
class _OutputMessage:
    line: str


@dataclass
class FakeError:
    name: str
    value: str


@dataclass
class FakeResult:
    png: str | None = None


@dataclass
class FakeLogs:
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)


@dataclass
class FakeExecution:
    logs: FakeLogs = field(default_factory=FakeLogs)
    results: list[FakeResult] = field(default_factory=list)
    error: FakeError | None = None


@dataclass
class Reply:
    """Scripted behaviour of one ``run_code`` call.

    ``output`` is a list of ``(stream, line)`` pairs delivered through the
    callbacks in order.
    """
    output: list[tuple[str, str]] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    error: FakeError | None = None
    delay: float = 0.0
    raises: Exception | None = None
    use_callbacks: bool = True


def default_reply(code: str) -> Reply:
    if "print(2+2)" in code:
        return Reply(output=[("stdout", "4\n")])
    return Reply()


class _FakeFiles:
    def __init__(self, log: list):
        self.written: dict[str, bytes] = {}
        self._log = log

    async def write(self, path: str, data: bytes):
        self._log.append(("write", path))
        self.written[path] = data


class FakeSandbox:
    """Stands in for ``e2b_code_interpreter.AsyncSandbox``."""

    def __init__(self, template: str | None = None, handler: Callable[[str], Reply] | None = None,
                 log: list | None = None):
        self.template = template
        self.handler = handler or default_reply
        self.log = log if log is not None else []
        self.files = _FakeFiles(self.log)
        self.runs: list[str] = []
        self.timeouts: list[Any] = []
        self.killed = False
        self.kill_error: Exception | None = None

    async def run_code(self, code, on_stdout=None, on_stderr=None, timeout=None):
        self.log.append(("run", code))
        self.runs.append(code)
        self.timeouts.append(timeout)
        reply = self.handler(code)
        if reply.delay:
            await asyncio.sleep(reply.delay)
        if reply.raises is not None:
            raise reply.raises
        logs = FakeLogs()
        for stream, line in reply.output:
            getattr(logs, stream).append(line)
            callback = on_stdout if stream == "stdout" else on_stderr
            if reply.use_callbacks and callback is not None:
                callback(_OutputMessage(line))
        return FakeExecution(
            logs=logs,
            results=[FakeResult(png=img) for img in reply.images],
            error=reply.error,
        )

    async def kill(self):
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True


class SandboxFactory:
    """Async sandbox factory that records every sandbox it creates."""

    def __init__(self, handler: Callable[[str], Reply] | None = None, delay: float = 0.0,
                 fail: Exception | None = None, log: list | None = None):
        self.handler = handler
        self.delay = delay
        self.fail = fail
        self.log = log if log is not None else []
        self.created: list[FakeSandbox] = []

    async def __call__(self, template):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        sandbox = FakeSandbox(template, self.handler, self.log)
        self.created.append(sandbox)
        return sandbox


# ---- Fake LLM adapter ----


def text_response(text: str) -> LLMResponse:
    return LLMResponse(
        blocks=[TextBlock(text=text)],
        content=[{"type": "text", "text": text}],
        usage=UsageMetadata(input_tokens=10, output_tokens=5),
        stop_reason="end_turn",
    )


def tool_response(*codes: str, text: str | None = None, start_id: int = 1) -> LLMResponse:
    blocks: list = []
    content: list[dict] = []
    if text:
        blocks.append(TextBlock(text=text))
        content.append({"type": "text", "text": text})
    for i, code in enumerate(codes, start=start_id):
        call_id = f"toolu_{i}"
        blocks.append(ToolCall(name="execute_python", args={"code": code}, id=call_id))
        content.append(
            {"type": "tool_use", "id": call_id, "name": "execute_python", "input": {"code": code}}
        )
    return LLMResponse(
        blocks=blocks,
        content=content,
        usage=UsageMetadata(input_tokens=10, output_tokens=5),
        stop_reason="tool_use",
    )


class RateLimited(Exception):
    """Stands in for the provider's 429 exception."""


class FakeAdapter(LLMAdapter):
    """Replays scripted responses; a callable script decides per call."""

    def __init__(self, script, log: list | None = None):
        self._script = script
        self.calls: list[dict] = []
        self.log = log if log is not None else []

    async def create_message(self, model, system_prompt, messages, tools=None, *, max_tokens=4096):
        self.log.append(("model", len(messages)))
        self.calls.append({
            "model": model,
            "system": system_prompt,
            "messages": copy.deepcopy(messages),
            "tools": tools,
        })
        await asyncio.sleep(0)
        if callable(self._script):
            item = self._script(system_prompt, messages)
        else:
            item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def make_tool_result_message(self, result, *, tool_call_id=None):
        return {"type": "tool_result", "tool_use_id": tool_call_id, "content": result}

    def is_quota_error(self, exc):
        return isinstance(exc, RateLimited)


async def prompt_for(mode: str) -> str:
    return f"system prompt for {mode}"


async def collect(agen) -> list:
    return [item async for item in agen]
