"""
Tool-result normalizer: one ExecutionOutcome → stream events + model summary.

The mapping is pure and total. Empty fields produce neither an event nor
a summary section:

    text   → at most one ``output`` event,  "Output:\\n<text>"
    error  → at most one ``error`` event,   "Error:\\n<error>"
    images → one ``image`` event each,      "[N plot(s) generated and displayed]"

Sections are joined by a blank line in that fixed order. An outcome with
nothing in it summarizes to ``SUCCESS_SENTINEL`` so the tool result sent
back to the model is never empty.
"""

from __future__ import annotations

from sandbox.handle import ExecutionOutcome

from . import events
from .events import StreamedEvent

SUCCESS_SENTINEL = "Code executed successfully."


def outcome_events(outcome: ExecutionOutcome) -> list[StreamedEvent]:
    result = []
    if outcome.text:
        result.append(events.output(outcome.text))
    if outcome.error:
        result.append(events.error(outcome.error))
    for img in outcome.images:
        result.append(events.image(img))
    return result


def summarize_outcome(outcome: ExecutionOutcome) -> str:
    sections = []
    if outcome.text:
        sections.append(f"Output:\n{outcome.text}")
    if outcome.error:
        sections.append(f"Error:\n{outcome.error}")
    if outcome.images:
        sections.append(f"[{len(outcome.images)} plot(s) generated and displayed]")
    return "\n\n".join(sections) or SUCCESS_SENTINEL


def normalize_outcome(outcome: ExecutionOutcome) -> tuple[list[StreamedEvent], str]:
    """Return ``(ordered_events, summary_text)`` for one execution."""
    return outcome_events(outcome), summarize_outcome(outcome)
