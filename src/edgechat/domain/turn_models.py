from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


GENERIC_ATTACHMENT_LABEL = "Attached Document"


class TurnState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_TURN_STATES = frozenset({TurnState.COMPLETED, TurnState.CANCELLED, TurnState.FAILED})


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    RESETTING = "resetting"
    DESTROYED = "destroyed"


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    model_name: str
    user_text: str
    image: Optional[bytes] = None
    attachment_ref: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


DecodeStatus = Literal["pending", "decoded", "failed"]


class Attachment(BaseModel):
    """Attachment as seen by one turn; resolution yields a new value."""

    model_config = ConfigDict(frozen=True)

    ref: str
    filename: str = GENERIC_ATTACHMENT_LABEL
    status: DecodeStatus = "pending"
    text: Optional[str] = None
    reason: Optional[str] = None

    def decoded(self, text: str) -> "Attachment":
        return self.model_copy(update={"status": "decoded", "text": text})

    def failed(self, reason: str) -> "Attachment":
        return self.model_copy(update={"status": "failed", "reason": reason})


class StreamEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    done: bool
    timestamp: float


class ModelStatus(BaseModel):
    model_name: str
    in_progress: bool = False
    preparing: bool = False
    resetting: bool = False
    session_state: Optional[SessionState] = None
