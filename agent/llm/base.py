"""Provider-agnostic types and abstract base class for LLM adapters.

All agent code should depend on these types, never on provider-specific SDKs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class TextBlock:
    """A text content block from the model response."""
    text: str


@dataclass
class ToolCall:
    """A single function/tool invocation extracted from the LLM response.

    Attributes:
        name: Tool/function name.
        args: Parsed arguments dict.
        id: Provider-assigned call ID (``toolu_xxxxx`` for Anthropic). Tool
            results must echo it back.
    """
    name: str
    args: dict
    id: str | None = None


ContentBlock = Union[TextBlock, ToolCall]


@dataclass
class UsageMetadata:
    """Normalized token counts."""
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0


@dataclass
class LLMResponse:
    """Provider-agnostic response from an LLM call.

    Attributes:
        blocks: Text and tool-call blocks in the order the model emitted them.
        content: The assistant message content in provider wire form, ready
            to be appended to the conversation history verbatim.
        usage: Token usage for this call.
        stop_reason: Provider stop reason (e.g. ``"tool_use"``, ``"end_turn"``).
        raw: The original provider-specific response object.
    """
    blocks: list[ContentBlock] = field(default_factory=list)
    content: list[dict] = field(default_factory=list)
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    stop_reason: str | None = None
    raw: Any = None

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "\n".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [b for b in self.blocks if isinstance(b, ToolCall)]


@dataclass
class FunctionSchema:
    """Wraps a tool/function schema dict for type clarity.

    The ``parameters`` dict is already JSON-schema-shaped and provider-agnostic.
    """
    name: str
    description: str
    parameters: dict


# ---------------------------------------------------------------------------
# LLMAdapter ABC
# ---------------------------------------------------------------------------

class LLMAdapter(ABC):
    """Abstract interface that every LLM provider adapter must implement.

    The agent loop owns the conversation history and passes it whole on
    every call, so adapters are stateless between calls.
    """

    @abstractmethod
    async def create_message(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict],
        tools: list[FunctionSchema] | None = None,
        *,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        """Send the full conversation and return the model's next turn.

        Raises the provider's own exception types on network, auth or
        rate-limit failures.
        """

    @abstractmethod
    def make_tool_result_message(
        self, result: str, *, tool_call_id: str | None = None
    ) -> dict:
        """Build a provider-specific tool result block for the history."""

    @abstractmethod
    def is_quota_error(self, exc: Exception) -> bool:
        """Return True if ``exc`` represents a quota/rate-limit error (429)."""
