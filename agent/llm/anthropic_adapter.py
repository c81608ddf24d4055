"""Anthropic adapter: wraps the ``anthropic`` SDK for Claude models.

This is the **only** module that imports the ``anthropic`` package.

Key Anthropic API details the agent loop relies on:
- System prompt is a separate ``system`` parameter, not a message.
- Strict user/assistant alternation required: consecutive same-role messages
  must be merged.
- Tool results are sent inside a ``user`` message with ``tool_result`` blocks.
- Response content is an ordered list of ``text`` / ``tool_use`` blocks;
  the order is preserved for the event stream.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import anthropic

from .base import (
    ContentBlock,
    FunctionSchema,
    LLMAdapter,
    LLMResponse,
    TextBlock,
    ToolCall,
    UsageMetadata,
)

logger = logging.getLogger("spinel")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_tools(schemas: list[FunctionSchema] | None) -> list[dict] | None:
    """Convert FunctionSchema list to Anthropic tool format."""
    if not schemas:
        return None
    return [
        {
            "name": s.name,
            "description": s.description,
            "input_schema": s.parameters,
        }
        for s in schemas
    ]


def _parse_response(raw) -> LLMResponse:
    """Parse an Anthropic Messages response into a provider-agnostic LLMResponse."""
    blocks: list[ContentBlock] = []
    content: list[dict] = []

    for block in raw.content:
        if block.type == "text":
            blocks.append(TextBlock(text=block.text))
            content.append({"type": "text", "text": block.text})
        elif block.type == "tool_use":
            args = block.input if isinstance(block.input, dict) else {}
            blocks.append(ToolCall(name=block.name, args=args, id=block.id))
            content.append(
                {"type": "tool_use", "id": block.id, "name": block.name, "input": args}
            )
        else:
            logger.debug("Anthropic: skipping %s block", block.type)

    usage = UsageMetadata()
    if getattr(raw, "usage", None):
        usage = UsageMetadata(
            input_tokens=getattr(raw.usage, "input_tokens", 0) or 0,
            output_tokens=getattr(raw.usage, "output_tokens", 0) or 0,
            cached_tokens=getattr(raw.usage, "cache_read_input_tokens", 0) or 0,
        )

    return LLMResponse(
        blocks=blocks,
        content=content,
        usage=usage,
        stop_reason=getattr(raw, "stop_reason", None),
        raw=raw,
    )


def _ensure_alternation(messages: list[dict]) -> list[dict]:
    """Merge consecutive same-role messages to satisfy Anthropic's alternation rule.

    Histories arrive from the browser, so two user turns in a row (e.g. after
    a failed request) are possible. Returns a new list; the input is untouched.
    """
    if not messages:
        return messages

    merged: list[dict] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            prev = merged[-1]
            prev_content = prev.get("content", "")
            new_content = msg.get("content", "")

            # Normalize to list form for merging
            if isinstance(prev_content, str):
                prev_list = (
                    [{"type": "text", "text": prev_content}] if prev_content else []
                )
            else:
                prev_list = list(prev_content)

            if isinstance(new_content, str):
                new_list = (
                    [{"type": "text", "text": new_content}] if new_content else []
                )
            else:
                new_list = list(new_content)

            prev["content"] = prev_list + new_list
        else:
            merged.append(dict(msg))

    return merged


# ---------------------------------------------------------------------------
# AnthropicAdapter
# ---------------------------------------------------------------------------


class AnthropicAdapter(LLMAdapter):
    """Adapter that wraps the async ``anthropic`` SDK client."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str | None = None,
        timeout_ms: int = 300_000,
        client: Any = None,
    ):
        if client is not None:
            self._client = client
            return
        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "timeout": timeout_ms / 1000.0,
        }
        if base_url:
            kwargs["base_url"] = base_url
        self._client = anthropic.AsyncAnthropic(**kwargs)

    # -- LLMAdapter interface --------------------------------------------------

    async def create_message(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict],
        tools: list[FunctionSchema] | None = None,
        *,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": _ensure_alternation(messages),
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        anthropic_tools = _build_tools(tools)
        if anthropic_tools:
            kwargs["tools"] = anthropic_tools

        raw = await self._client.messages.create(**kwargs)
        response = _parse_response(raw)
        logger.debug(
            "Anthropic: stop=%s blocks=%d in=%d out=%d",
            response.stop_reason,
            len(response.blocks),
            response.usage.input_tokens,
            response.usage.output_tokens,
        )
        return response

    def make_tool_result_message(
        self, result: str, *, tool_call_id: str | None = None
    ) -> dict:
        """Build an Anthropic tool_result content block.

        The agent loop collects these into one ``{"role": "user", ...}``
        message per model turn.
        """
        return {
            "type": "tool_result",
            "tool_use_id": tool_call_id or f"toolu_{uuid.uuid4().hex[:24]}",
            "content": result,
        }

    def is_quota_error(self, exc: Exception) -> bool:
        """Check if the exception is an Anthropic rate-limit error."""
        return isinstance(exc, anthropic.RateLimitError)
