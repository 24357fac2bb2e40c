"""Core domain models shared by the relay and the voice session."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ======================================================================
# Enumerations
# ======================================================================
class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionState(str, Enum):
    """Conversation session states.  Exactly one holds at a time."""

    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ======================================================================
# Conversation models
# ======================================================================
class Turn(BaseModel):
    """One finalized message in the conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: int = Field(default_factory=now_ms)

    def to_message(self) -> dict[str, str]:
        """Wire form used in relay requests (timestamp dropped)."""
        return {"role": self.role.value, "content": self.content}


class SessionSnapshot(BaseModel):
    """Serialisable view of a session, published after each transition."""

    state: SessionState
    pending_transcript: str = ""
    last_error: str | None = None
    transcript: list[Turn] = Field(default_factory=list)


# ======================================================================
# Relay API models
# ======================================================================
class ChatRequest(BaseModel):
    """Relay request body.

    Field types are coerced rather than rejected: a non-string prompt is
    treated as empty and a non-list history as no history.  Individual
    history entries are filtered later by the relay.
    """

    prompt: str = ""
    history: list[Any] = Field(default_factory=list)

    @field_validator("prompt", mode="before")
    @classmethod
    def _coerce_prompt(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("history", mode="before")
    @classmethod
    def _coerce_history(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []


class ChatResponse(BaseModel):
    reply: str


class ErrorResponse(BaseModel):
    error: str
