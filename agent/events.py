"""
Streamed event types for one agent run.

The ordered sequence of events a run yields is the complete observable
record of the request; replaying it reconstructs the transcript shown in
a comparison panel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


# ---- Event type constants ----

TEXT = "text"                # assistant prose
CODE = "code"                # code the model submitted for execution
OUTPUT = "output"            # merged stdout/stderr of an execution
ERROR = "error"              # execution error, or the failure that ends the run
IMAGE = "image"              # base64 PNG produced by an execution
CAP_REACHED = "cap_reached"  # iteration cap fired while tools were still requested
DONE = "done"                # terminal success marker

EVENT_TYPES = frozenset({TEXT, CODE, OUTPUT, ERROR, IMAGE, CAP_REACHED, DONE})

# Types that may carry the terminal flag
TERMINAL_CAPABLE = frozenset({DONE, ERROR})


@dataclass(frozen=True)
class StreamedEvent:
    """One unit of the outbound stream.

    Attributes:
        type: One of ``EVENT_TYPES``.
        content: Payload text (code, output, base64 image, ...). None for
            ``done``.
        terminal: Set only on the event that ends the run: ``done``, or the
            ``error`` for a failed setup or model call. Execution errors
            are not terminal; the model sees them and the loop goes on.
            Not part of the wire form.
    """
    type: str
    content: str | None = None
    terminal: bool = False

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.type!r}")
        if self.terminal and self.type not in TERMINAL_CAPABLE:
            raise ValueError(f"Event type {self.type!r} cannot end a stream")

    @property
    def is_terminal(self) -> bool:
        return self.terminal

    def to_dict(self) -> dict[str, Any]:
        """Wire form ``{"type", "content"}``; content omitted when None."""
        if self.content is None:
            return {"type": self.type}
        return {"type": self.type, "content": self.content}


def text(content: str) -> StreamedEvent:
    return StreamedEvent(TEXT, content)


def code(content: str) -> StreamedEvent:
    return StreamedEvent(CODE, content)


def output(content: str) -> StreamedEvent:
    return StreamedEvent(OUTPUT, content)


def error(content: str) -> StreamedEvent:
    """A code-execution error. The run continues after it."""
    return StreamedEvent(ERROR, content)


def fatal(content: str) -> StreamedEvent:
    """The error that ends a run (setup or model-call failure)."""
    return StreamedEvent(ERROR, content, terminal=True)


def image(content: str) -> StreamedEvent:
    return StreamedEvent(IMAGE, content)


def cap_reached(limit: int) -> StreamedEvent:
    return StreamedEvent(CAP_REACHED, str(limit))


def done() -> StreamedEvent:
    return StreamedEvent(DONE, terminal=True)
