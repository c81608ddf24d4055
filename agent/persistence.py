"""
Fire-and-forget persistence helpers.

Every helper is safe to call from the streaming path: failures are logged
at WARNING and returned as a ``BestEffortResult``, never raised, so a
broken disk or store never blocks or breaks a response. ``fire_and_forget``
runs a helper on a worker thread without awaiting it.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from .events import IMAGE, TEXT, StreamedEvent
from .logging import tagged
from .session import ChatStore

logger = logging.getLogger("spinel")

IMAGE_PLACEHOLDER = "[base64]"

_executor: Optional[ThreadPoolExecutor] = None


@dataclass(frozen=True)
class BestEffortResult:
    ok: bool
    error: Optional[str] = None


def _best_effort(op: str, fn: Callable, *args) -> BestEffortResult:
    try:
        fn(*args)
    except Exception as e:
        logger.warning("[persistence] %s failed: %s", op, e, extra=tagged("persistence"))
        return BestEffortResult(ok=False, error=str(e))
    return BestEffortResult(ok=True)


def ensure_session(store: ChatStore, session_id: str) -> BestEffortResult:
    """Upsert the session record (creates if new, touches updated_at)."""
    return _best_effort("ensure_session", store.ensure_session, session_id)


def save_user_message(store: ChatStore, session_id: str, mode: str, content: str) -> BestEffortResult:
    return _best_effort(
        "save_user_message", store.append_message, session_id, "user", mode, content
    )


def save_assistant_message(
    store: ChatStore,
    session_id: str,
    mode: str,
    text_content: str,
    blocks: list[dict],
) -> BestEffortResult:
    """Save an assistant message with its structured blocks."""
    return _best_effort(
        "save_assistant_message",
        store.append_message, session_id, "assistant", mode, text_content, blocks,
    )


def save_uploaded_file(store: ChatStore, session_id: str, filename: str, data: bytes) -> BestEffortResult:
    return _best_effort("save_uploaded_file", store.save_upload, session_id, filename, data)


# ---- Transcript helpers ----

def last_user_text(messages: list[dict]) -> str:
    """Text of the last message if it is a user message, else ``""``.

    Structured content contributes only its ``text`` blocks, joined by
    newlines.
    """
    if not messages:
        return ""
    last = messages[-1]
    if last.get("role") != "user":
        return ""
    content = last.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b.get("text", "") for b in content
            if isinstance(b, dict) and b.get("type") == "text"
        )
    return ""


def transcript_blocks(streamed: list[StreamedEvent]) -> list[dict]:
    """Convert streamed events into storable blocks.

    Terminal events are dropped and image payloads are replaced by a
    placeholder. Execution errors stay; they are part of the answer.
    """
    blocks = []
    for event in streamed:
        if event.is_terminal:
            continue
        content = IMAGE_PLACEHOLDER if event.type == IMAGE else event.content
        blocks.append({"type": event.type, "content": content})
    return blocks


def transcript_text(streamed: list[StreamedEvent]) -> str:
    return "\n".join(e.content or "" for e in streamed if e.type == TEXT)


# ---- Dispatch ----

def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="persistence")
    return _executor


def fire_and_forget(fn: Callable[..., BestEffortResult], *args) -> Future:
    """Run a persistence helper on a worker thread; the caller need not wait."""
    return _get_executor().submit(fn, *args)


def shutdown(wait: bool = True) -> None:
    """Drain pending writes (called on server shutdown)."""
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=wait)
        _executor = None
