"""Tests for the agent loop: event order, history shape, caps and failures."""

from __future__ import annotations

import asyncio

import pytest

import sandbox.handle as handle_module
from agent.core import AgentLoop, RunStats, UploadedFile
from sandbox.pool import SandboxPool

from conftest import (
    FakeAdapter,
    FakeError,
    RateLimited,
    Reply,
    SandboxFactory,
    collect,
    prompt_for,
    text_response,
    tool_response,
)

USER_MESSAGES = [{"role": "user", "content": "What is 2+2? Use Python."}]


def _loop(adapter, factory=None, **kwargs) -> tuple[AgentLoop, SandboxPool, SandboxFactory]:
    factory = factory or SandboxFactory()
    pool = SandboxPool(
        factory,
        templates={"vanilla": None, "spinel": "spinel-template"},
        secrets=lambda mode: {},
        exec_timeout=kwargs.pop("exec_timeout", 5),
    )
    loop = AgentLoop(
        adapter,
        pool,
        model="test-model",
        system_prompt_provider=prompt_for,
        **kwargs,
    )
    return loop, pool, factory


def _pairs(evs) -> list[tuple[str, str | None]]:
    return [(e.type, e.content) for e in evs]


@pytest.mark.asyncio
async def test_single_tool_call_then_answer() -> None:
    adapter = FakeAdapter([tool_response("print(2+2)"), text_response("The answer is 4.")])
    loop, pool, factory = _loop(adapter)
    messages = list(USER_MESSAGES)

    evs = await collect(loop.run(messages, "vanilla", "s1"))

    assert _pairs(evs) == [
        ("code", "print(2+2)"),
        ("output", "4"),
        ("text", "The answer is 4."),
        ("done", None),
    ]
    assert messages == USER_MESSAGES
    assert len(factory.created) == 1
    assert factory.created[0].runs == ["print(2+2)"]

    second_call = adapter.calls[1]["messages"]
    assert second_call[0] == USER_MESSAGES[0]
    assert second_call[1]["role"] == "assistant"
    assert second_call[1]["content"][0]["type"] == "tool_use"
    assert second_call[2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "Output:\n4"}],
    }
    assert adapter.calls[0]["system"] == "system prompt for vanilla"
    assert adapter.calls[0]["model"] == "test-model"
    assert [t.name for t in adapter.calls[0]["tools"]] == ["execute_python"]


@pytest.mark.asyncio
async def test_plain_answer_ends_after_one_call() -> None:
    adapter = FakeAdapter([text_response("Hello!")])
    loop, _, factory = _loop(adapter)
    stats = RunStats()

    evs = await collect(loop.run(USER_MESSAGES, "spinel", "s1", stats=stats))

    assert _pairs(evs) == [("text", "Hello!"), ("done", None)]
    assert len(adapter.calls) == 1
    assert stats.iterations == 1
    assert not stats.cap_reached


@pytest.mark.asyncio
async def test_execution_timeout_is_reported_and_loop_continues(monkeypatch) -> None:
    monkeypatch.setattr(handle_module, "_TIMEOUT_GRACE_SECONDS", 0.0)
    adapter = FakeAdapter([tool_response("while True: pass"), text_response("That timed out.")])
    factory = SandboxFactory(handler=lambda code: Reply(delay=5))
    loop, _, _ = _loop(adapter, factory, exec_timeout=0.05)

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert _pairs(evs) == [
        ("code", "while True: pass"),
        ("error", "Execution timed out after 0.05s"),
        ("text", "That timed out."),
        ("done", None),
    ]
    tool_result = adapter.calls[1]["messages"][-1]["content"][0]
    assert tool_result["content"] == "Error:\nExecution timed out after 0.05s"


@pytest.mark.asyncio
async def test_execution_error_and_images_are_streamed() -> None:
    def handler(code: str) -> Reply:
        return Reply(
            output=[("stdout", "plotting\n")],
            images=["PNGDATA"],
            error=FakeError("ValueError", "bad axis"),
        )

    adapter = FakeAdapter([tool_response("plot()"), text_response("Done.")])
    loop, _, _ = _loop(adapter, SandboxFactory(handler=handler))

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert _pairs(evs) == [
        ("code", "plot()"),
        ("output", "plotting"),
        ("error", "ValueError: bad axis"),
        ("image", "PNGDATA"),
        ("text", "Done."),
        ("done", None),
    ]
    assert [e.is_terminal for e in evs] == [False] * 5 + [True]


@pytest.mark.asyncio
async def test_concurrent_runs_keep_separate_stats() -> None:
    def script(system, messages):
        if "spinel" in system and len(messages) == 1:
            return tool_response("print(2+2)")
        return text_response("4")

    loop, _, _ = _loop(FakeAdapter(script))
    vanilla, spinel = RunStats(), RunStats()

    await asyncio.gather(
        collect(loop.run(USER_MESSAGES, "vanilla", "s1", stats=vanilla)),
        collect(loop.run(USER_MESSAGES, "spinel", "s1", stats=spinel)),
    )

    assert (vanilla.iterations, vanilla.tool_calls) == (1, 0)
    assert (spinel.iterations, spinel.tool_calls) == (2, 1)


@pytest.mark.asyncio
async def test_iteration_cap_emits_cap_reached_then_done() -> None:
    adapter = FakeAdapter(lambda system, messages: tool_response("x = 1"))
    loop, _, _ = _loop(adapter, max_iterations=3)
    stats = RunStats()

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1", stats=stats))

    assert len(adapter.calls) == 3
    assert [e.type for e in evs] == ["code", "code", "code", "cap_reached", "done"]
    assert evs[-2].content == "3"
    assert stats.cap_reached


@pytest.mark.asyncio
async def test_model_failure_emits_single_error() -> None:
    adapter = FakeAdapter([RuntimeError("overloaded")])
    loop, _, _ = _loop(adapter)
    stats = RunStats()

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1", stats=stats))

    assert _pairs(evs) == [("error", "overloaded")]
    assert evs[0].is_terminal
    assert stats.failed
    assert not stats.rate_limited


@pytest.mark.asyncio
async def test_rate_limit_is_named_in_the_terminal_error() -> None:
    adapter = FakeAdapter([RateLimited("429 too many requests")])
    loop, _, _ = _loop(adapter)
    stats = RunStats()

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1", stats=stats))

    assert _pairs(evs) == [
        ("error", "Rate limited by the model provider: 429 too many requests"),
    ]
    assert evs[0].is_terminal
    assert stats.rate_limited


@pytest.mark.asyncio
async def test_model_failure_mid_loop_keeps_earlier_events() -> None:
    adapter = FakeAdapter([tool_response("print(2+2)"), RuntimeError("connection reset")])
    loop, _, _ = _loop(adapter)

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert _pairs(evs) == [
        ("code", "print(2+2)"),
        ("output", "4"),
        ("error", "connection reset"),
    ]
    assert sum(1 for e in evs if e.is_terminal) == 1


@pytest.mark.asyncio
async def test_multiple_tool_calls_run_in_order_with_one_result_message() -> None:
    adapter = FakeAdapter([
        tool_response("a = 2", "print(a + 2)", text="Let me compute."),
        text_response("4"),
    ])

    def handler(code: str) -> Reply:
        return Reply(output=[("stdout", "4\n")]) if "print" in code else Reply()

    loop, _, factory = _loop(adapter, SandboxFactory(handler=handler))

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert _pairs(evs) == [
        ("text", "Let me compute."),
        ("code", "a = 2"),
        ("code", "print(a + 2)"),
        ("output", "4"),
        ("text", "4"),
        ("done", None),
    ]
    assert factory.created[0].runs == ["a = 2", "print(a + 2)"]
    history = adapter.calls[1]["messages"]
    assert [m["role"] for m in history] == ["user", "assistant", "user"]
    assert history[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "Code executed successfully."},
        {"type": "tool_result", "tool_use_id": "toolu_2", "content": "Output:\n4"},
    ]


@pytest.mark.asyncio
async def test_files_are_uploaded_before_first_model_call() -> None:
    log: list = []
    adapter = FakeAdapter([text_response("Got it.")], log=log)
    loop, _, factory = _loop(adapter, SandboxFactory(log=log))
    files = [UploadedFile("data.csv", b"x\n1\n"), UploadedFile("notes.txt", b"hi")]

    await collect(loop.run(USER_MESSAGES, "vanilla", "s1", files))

    assert log[:3] == [
        ("write", "/home/user/data.csv"),
        ("write", "/home/user/notes.txt"),
        ("model", 1),
    ]
    assert factory.created[0].files.written["/home/user/data.csv"] == b"x\n1\n"


@pytest.mark.asyncio
async def test_unknown_mode_fails_without_creating_a_sandbox() -> None:
    adapter = FakeAdapter([text_response("unused")])
    loop, pool, factory = _loop(adapter)

    evs = await collect(loop.run(USER_MESSAGES, "turbo", "s1"))

    assert [e.type for e in evs] == ["error"]
    assert "turbo" in evs[0].content
    assert factory.created == []
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_sandbox_creation_failure_is_terminal_error() -> None:
    adapter = FakeAdapter([text_response("unused")])
    loop, _, _ = _loop(adapter, SandboxFactory(fail=RuntimeError("no capacity")))

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert [e.type for e in evs] == ["error"]
    assert "no capacity" in evs[0].content


@pytest.mark.asyncio
async def test_unknown_tool_and_empty_code_are_reported_to_the_model() -> None:
    from agent.llm import LLMResponse, ToolCall

    odd = LLMResponse(
        blocks=[
            ToolCall(name="shell", args={"cmd": "ls"}, id="toolu_a"),
            ToolCall(name="execute_python", args={}, id="toolu_b"),
        ],
        content=[
            {"type": "tool_use", "id": "toolu_a", "name": "shell", "input": {"cmd": "ls"}},
            {"type": "tool_use", "id": "toolu_b", "name": "execute_python", "input": {}},
        ],
    )
    adapter = FakeAdapter([odd, text_response("ok")])
    loop, _, factory = _loop(adapter)

    evs = await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert _pairs(evs)[:4] == [
        ("code", ""),
        ("error", "Unknown tool: shell"),
        ("code", ""),
        ("error", "No code provided"),
    ]
    assert factory.created[0].runs == []


@pytest.mark.asyncio
async def test_both_modes_run_in_parallel_with_separate_sandboxes() -> None:
    def script(system: str, messages: list[dict]):
        last = messages[-1]["content"]
        if isinstance(last, list) and last[0].get("type") == "tool_result":
            return text_response(f"answer from {system}")
        return tool_response("print(2+2)")

    adapter = FakeAdapter(script)
    loop, pool, factory = _loop(adapter)

    vanilla, spinel = await asyncio.gather(
        collect(loop.run(USER_MESSAGES, "vanilla", "s1")),
        collect(loop.run(USER_MESSAGES, "spinel", "s1")),
    )

    assert _pairs(vanilla) == [
        ("code", "print(2+2)"),
        ("output", "4"),
        ("text", "answer from system prompt for vanilla"),
        ("done", None),
    ]
    assert _pairs(spinel)[-2] == ("text", "answer from system prompt for spinel")
    assert len(factory.created) == 2
    assert sorted(pool.keys()) == [("s1", "spinel"), ("s1", "vanilla")]
    assert all(sb.runs == ["print(2+2)"] for sb in factory.created)


@pytest.mark.asyncio
async def test_sandbox_is_reused_across_turns() -> None:
    adapter = FakeAdapter([
        tool_response("x = 40"), text_response("stored"),
        tool_response("print(x + 2)"), text_response("42"),
    ])
    loop, _, factory = _loop(adapter)

    await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))
    await collect(loop.run(USER_MESSAGES, "vanilla", "s1"))

    assert len(factory.created) == 1
    assert factory.created[0].runs == ["x = 40", "print(x + 2)"]
