"""Pydantic request/response schemas for the FastAPI backend."""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ---- Requests ----

class ChatMessage(BaseModel):
    """One Anthropic-shaped conversation message."""
    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant"]
    content: Union[str, list[dict[str, Any]]]


class UploadedFilePayload(BaseModel):
    name: str = Field(..., min_length=1, description="File name inside /home/user")
    content: str = Field(..., description="Base64-encoded file bytes")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(..., min_length=1)
    mode: Literal["vanilla", "spinel"]
    session_id: str = Field(
        ..., alias="sessionId", min_length=1, max_length=128,
        pattern=r"^[a-zA-Z0-9_.-]+$",
    )
    files: Optional[list[UploadedFilePayload]] = None


# ---- Responses ----

class MessageInfo(BaseModel):
    role: str
    mode: str
    content: str = ""
    blocks: Optional[list[dict[str, Any]]] = None
    created_at: Optional[str] = None


class ServerStatus(BaseModel):
    status: str = "ok"
    active_sandboxes: int = 0
    uptime_seconds: float = 0.0
    anthropic_key_configured: bool = False
    e2b_key_configured: bool = False
    model: str = ""
