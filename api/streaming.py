"""SSE bridge: agent event iterator → ``EventSourceResponse`` frames.

Each frame is ``{"data": json.dumps({"type", "content"})}``; sse-starlette
writes it as ``data: {...}\\n\\n``. Frames keep the agent's emission order
and every stream ends with exactly one terminal frame (``done`` or
``error``), even when the agent iterator raises.

Terminal status is carried by the event (``StreamedEvent.terminal``), not
its type: an ``error`` frame from a failed code execution is followed by
the model's next turn.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from agent import events
from agent.events import StreamedEvent
from agent.logging import tagged

logger = logging.getLogger("spinel")

CompletionCallback = Callable[[list[StreamedEvent], Optional[StreamedEvent]], None]
DisconnectCheck = Callable[[], Awaitable[bool]]


def encode_frame(event: StreamedEvent) -> dict:
    return {"data": json.dumps(event.to_dict())}


class EventStreamEmitter:
    """Serializes one agent run into SSE frames.

    Usage:
        emitter = EventStreamEmitter(agent_loop.run(...), on_complete=persist)
        return EventSourceResponse(emitter.frames())

    Args:
        source: Async iterator of StreamedEvents for one run.
        on_complete: Called once with ``(transcript, terminal_event)`` when
            the stream finishes. ``terminal_event`` is None if the client
            went away first. Exceptions are logged, never raised.
        is_disconnected: Optional ``async () -> bool`` polled between
            events (e.g. ``request.is_disconnected``).
    """

    def __init__(
        self,
        source: AsyncIterator[StreamedEvent],
        *,
        on_complete: Optional[CompletionCallback] = None,
        is_disconnected: Optional[DisconnectCheck] = None,
    ):
        self._source = source
        self._on_complete = on_complete
        self._is_disconnected = is_disconnected
        self.transcript: list[StreamedEvent] = []
        self.terminal: Optional[StreamedEvent] = None
        self.disconnected = False

    async def frames(self) -> AsyncIterator[dict]:
        """Async generator yielding SSE frame dicts until the stream ends."""
        guarded = self._guarded()
        try:
            async for event in guarded:
                if self._is_disconnected is not None and await self._is_disconnected():
                    self.disconnected = True
                    logger.info("Client disconnected; stopping stream", extra=tagged("sse"))
                    break
                if event.is_terminal:
                    self.terminal = event
                else:
                    self.transcript.append(event)
                yield encode_frame(event)
                if event.is_terminal:
                    break
        except asyncio.CancelledError:
            self.disconnected = True
            raise
        finally:
            await guarded.aclose()
            await self._close_source()
            self._complete()

    async def _guarded(self) -> AsyncIterator[StreamedEvent]:
        """The source's events, with a terminal event guaranteed at the end."""
        try:
            async for event in self._source:
                yield event
                if event.is_terminal:
                    return
        except Exception as e:
            logger.error("Agent stream raised: %s", e, exc_info=True, extra=tagged("sse"))
            yield events.fatal(str(e) or type(e).__name__)
            return
        logger.warning("Agent stream ended without a terminal event", extra=tagged("sse"))
        yield events.fatal("Stream ended unexpectedly")

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("Closing agent stream failed: %s", e, extra=tagged("sse"))

    def _complete(self) -> None:
        if self._on_complete is None:
            return
        callback, self._on_complete = self._on_complete, None
        try:
            callback(self.transcript, self.terminal)
        except Exception as e:
            logger.warning("Stream completion callback failed: %s", e, extra=tagged("sse"))
