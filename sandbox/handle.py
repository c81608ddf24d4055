"""
Execution environment handle: one stateful E2B sandbox per (session, mode).

The handle wraps an ``e2b_code_interpreter.AsyncSandbox`` (or any object
with the same ``run_code`` / ``files.write`` / ``kill`` surface). Kernel
state persists across ``execute()`` calls, so variables and files created
by one tool call are visible to the next.

``execute()`` never raises: timeouts and backend faults come back as an
``ExecutionOutcome`` with an error, so the model can read the failure and
try again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from agent.logging import tagged
from agent.turn_limits import get_limit

logger = logging.getLogger("spinel")

SANDBOX_HOME = "/home/user"

# Slack on top of the backend's own execution timeout before the call is
# abandoned locally.
_TIMEOUT_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one code execution.

    Attributes:
        text: Merged stdout/stderr in emission order, stripped.
        images: Base64 PNG payloads in the order the kernel produced them.
        error: Error description, or None on success.
    """
    text: str = ""
    images: tuple[str, ...] = ()
    error: str | None = None


def sandbox_path(filename: str) -> str:
    """Return the absolute sandbox path for an uploaded file.

    Raises:
        ValueError: if *filename* is empty or could escape ``/home/user``.
    """
    if (
        not filename
        or "/" in filename
        or "\\" in filename
        or filename in (".", "..")
        or "\x00" in filename
    ):
        raise ValueError(f"Unsafe filename: {filename!r}")
    return f"{SANDBOX_HOME}/{filename}"


def _format_error(error: Any) -> str:
    name = getattr(error, "name", "") or ""
    value = getattr(error, "value", None)
    if value is None:
        return str(error)
    return f"{name}: {value}" if name else str(value)


class SandboxHandle:
    """A borrowed reference to one live sandbox, owned by a SandboxPool."""

    def __init__(
        self,
        session_id: str,
        mode: str,
        sandbox: Any,
        *,
        exec_timeout: float | None = None,
    ):
        self.session_id = session_id
        self.mode = mode
        self.sandbox = sandbox
        self.exec_timeout = (
            exec_timeout if exec_timeout is not None else get_limit("sandbox.exec_timeout")
        )
        self.created_at = datetime.now(timezone.utc)
        self._last_used = time.monotonic()
        self._active_runs = 0
        self.closed = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.session_id, self.mode)

    # ---- Bookkeeping ----

    def touch(self) -> None:
        self._last_used = time.monotonic()

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_used

    @property
    def in_use(self) -> bool:
        return self._active_runs > 0

    @asynccontextmanager
    async def borrow(self) -> AsyncIterator["SandboxHandle"]:
        """Mark the handle as in use by one agent run for the block's duration.

        Overlapping runs on the same key are not serialized; they share the
        kernel with undefined interleaving, so the overlap is logged.
        """
        if self._active_runs:
            logger.warning(
                "Sandbox %s/%s borrowed by %d concurrent runs; tool calls may interleave",
                self.session_id, self.mode, self._active_runs + 1,
                extra=tagged("sandbox"),
            )
        self._active_runs += 1
        self.touch()
        try:
            yield self
        finally:
            self._active_runs -= 1
            self.touch()

    # ---- Execution ----

    async def execute(self, code: str, *, timeout: float | None = None) -> ExecutionOutcome:
        """Run *code* in the sandbox kernel and capture the outcome.

        Args:
            code: Python source.
            timeout: Seconds before the execution is abandoned. Defaults to
                ``sandbox.exec_timeout``.
        """
        timeout = timeout if timeout is not None else self.exec_timeout
        chunks: list[str] = []

        def _collect(message: Any) -> None:
            chunks.append(getattr(message, "line", None) or str(message))

        self.touch()
        started = time.monotonic()
        try:
            execution = await asyncio.wait_for(
                self.sandbox.run_code(
                    code,
                    on_stdout=_collect,
                    on_stderr=_collect,
                    timeout=timeout,
                ),
                timeout=timeout + _TIMEOUT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Execution timed out after %ss", timeout, extra=tagged("sandbox")
            )
            return ExecutionOutcome(error=f"Execution timed out after {timeout:g}s")
        except Exception as e:
            logger.warning("Execution failed: %s", e, extra=tagged("sandbox"))
            return ExecutionOutcome(error=str(e) or "Execution failed")
        finally:
            self.touch()

        if chunks:
            text = "".join(chunks)
        else:
            logs = getattr(execution, "logs", None)
            text = "".join(getattr(logs, "stdout", []) or []) + "".join(
                getattr(logs, "stderr", []) or []
            )

        images = tuple(
            r.png for r in (getattr(execution, "results", None) or []) if getattr(r, "png", None)
        )
        error = getattr(execution, "error", None)
        outcome = ExecutionOutcome(
            text=text.strip(),
            images=images,
            error=_format_error(error) if error else None,
        )
        logger.debug(
            "Executed %d chars in %dms: %d chars out, %d image(s), error=%s",
            len(code),
            int((time.monotonic() - started) * 1000),
            len(outcome.text),
            len(outcome.images),
            outcome.error is not None,
            extra=tagged("sandbox"),
        )
        return outcome

    # ---- Files ----

    async def write_file(self, filename: str, data: bytes) -> str:
        """Write *data* to ``/home/user/{filename}`` and return that path."""
        path = sandbox_path(filename)
        await self.sandbox.files.write(path, data)
        self.touch()
        logger.debug("Wrote %s (%d bytes)", path, len(data), extra=tagged("sandbox"))
        return path

    # ---- Teardown ----

    async def close(self) -> None:
        """Kill the remote sandbox. Failures are logged, not raised."""
        if self.closed:
            return
        self.closed = True
        try:
            await self.sandbox.kill()
        except Exception as e:
            logger.warning(
                "Failed to kill sandbox %s/%s: %s", self.session_id, self.mode, e,
                extra=tagged("sandbox"),
            )
        else:
            logger.info(
                "Sandbox %s/%s closed", self.session_id, self.mode, extra=tagged("sandbox")
            )
