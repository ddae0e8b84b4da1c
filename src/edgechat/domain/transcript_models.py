from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


Side = Literal["user", "agent", "system"]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _new_id() -> str:
    return uuid.uuid4().hex


class Stat(BaseModel):
    id: str
    label: str
    unit: str


class BenchmarkResult(BaseModel):
    """Stat block attached to a finished agent text entry."""

    ordered_stats: List[Stat]
    stat_values: Dict[str, float]
    running: bool = False
    latency_ms: float = -1.0
    accelerator: str = ""


class _Envelope(BaseModel):
    entry_id: str = Field(default_factory=_new_id)
    timestamp: str = Field(default_factory=_now_iso)
    side: Side = "system"
    accelerator: str = ""
    latency_ms: float = -1.0
    benchmark: Optional[BenchmarkResult] = None


class LoadingEntry(_Envelope):
    kind: Literal["loading"] = "loading"
    side: Side = "agent"


class TextEntry(_Envelope):
    kind: Literal["text"] = "text"
    content: str
    is_markdown: bool = True

    def clone(self) -> "TextEntry":
        return self.model_copy(
            update={"entry_id": _new_id(), "timestamp": _now_iso(), "benchmark": None}
        )


class WarningEntry(_Envelope):
    kind: Literal["warning"] = "warning"
    content: str


class DocumentEntry(_Envelope):
    kind: Literal["document"] = "document"
    side: Side = "user"
    filename: str
    uri: str


TranscriptEntry = Annotated[
    Union[LoadingEntry, TextEntry, WarningEntry, DocumentEntry],
    Field(discriminator="kind"),
]
