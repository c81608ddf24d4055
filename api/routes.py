"""All REST + SSE endpoints for the FastAPI backend."""

import base64
import binascii
import re
import time

import config
from fastapi import APIRouter, HTTPException, Request, Response
from sse_starlette.sse import EventSourceResponse

from agent import persistence
from agent.core import AgentLoop, UploadedFile
from agent.events import DONE, StreamedEvent
from agent.logging import get_logger, tagged
from agent.session import ChatStore
from sandbox.handle import sandbox_path
from sandbox.pool import SandboxPool

from .models import ChatRequest, MessageInfo, ServerStatus
from .streaming import EventStreamEmitter

router = APIRouter(prefix="/api")

logger = get_logger()

# These are injected by app.py lifespan
agent_loop: AgentLoop = None  # type: ignore[assignment]
sandbox_pool: SandboxPool = None  # type: ignore[assignment]
chat_store: ChatStore = None  # type: ignore[assignment]
_start_time: float = 0.0

# session_id: alphanumeric + underscore/dot/dash
_SAFE_PATH_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_path_component(value: str, name: str = "path component") -> None:
    """Reject path components containing traversal sequences."""
    if not _SAFE_PATH_RE.match(value) or value in (".", ".."):
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value!r}")


def _decode_files(req: ChatRequest) -> list[UploadedFile]:
    files = []
    for f in req.files or []:
        try:
            sandbox_path(f.name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        try:
            data = base64.b64decode(f.content, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail=f"File {f.name!r} is not valid base64")
        files.append(UploadedFile(name=f.name, data=data))
    return files


# ---- Chat ----

@router.post("/chat")
async def chat(req: ChatRequest, request: Request):
    """Run one comparison panel and stream its events over SSE."""
    _validate_path_component(req.session_id, "session_id")
    files = _decode_files(req)
    messages = [m.model_dump(exclude_none=True) for m in req.messages]
    session_id, mode = req.session_id, req.mode

    logger.info(
        "Chat request: session=%s mode=%s messages=%d files=%d",
        session_id, mode, len(messages), len(files),
        extra=tagged("api"),
    )

    store = chat_store
    if store is not None:
        persistence.fire_and_forget(persistence.ensure_session, store, session_id)
        for f in files:
            persistence.fire_and_forget(
                persistence.save_uploaded_file, store, session_id, f.name, f.data
            )
        user_text = persistence.last_user_text(messages)
        if user_text:
            persistence.fire_and_forget(
                persistence.save_user_message, store, session_id, mode, user_text
            )

    def _on_complete(transcript: list[StreamedEvent], terminal) -> None:
        if store is None or terminal is None or terminal.type != DONE or not transcript:
            return
        persistence.fire_and_forget(
            persistence.save_assistant_message,
            store, session_id, mode,
            persistence.transcript_text(transcript),
            persistence.transcript_blocks(transcript),
        )

    emitter = EventStreamEmitter(
        agent_loop.run(messages, mode, session_id, files),
        on_complete=_on_complete,
        is_disconnected=request.is_disconnected,
    )
    return EventSourceResponse(
        emitter.frames(),
        headers={"Cache-Control": "no-cache"},
    )


# ---- Sessions ----

@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(session_id: str):
    """Release every sandbox held for the session."""
    _validate_path_component(session_id, "session_id")
    released = await sandbox_pool.release_session(session_id)
    if not released:
        raise HTTPException(status_code=404, detail=f"No sandboxes for session '{session_id}'")
    logger.info("Released %d sandbox(es) for %s", released, session_id, extra=tagged("api"))
    return Response(status_code=204)


@router.get("/sessions/{session_id}/messages")
async def list_messages(session_id: str):
    """Persisted transcript of a session, oldest first."""
    _validate_path_component(session_id, "session_id")
    try:
        records = chat_store.list_messages(session_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return [MessageInfo(**r).model_dump() for r in records]


# ---- Status ----

@router.get("/status")
async def server_status():
    """Server status (active sandboxes, uptime, configured keys)."""
    return ServerStatus(
        active_sandboxes=len(sandbox_pool) if sandbox_pool is not None else 0,
        uptime_seconds=time.time() - _start_time,
        anthropic_key_configured=bool(config.get_api_key("anthropic")),
        e2b_key_configured=bool(config.get_api_key("e2b")),
        model=config.MODEL,
    ).model_dump()
