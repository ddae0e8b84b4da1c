from __future__ import annotations

from threading import RLock
from typing import Dict, List, Optional, Protocol

from ..domain.transcript_models import (
    BenchmarkResult,
    TextEntry,
    TranscriptEntry,
)


class MessageSink(Protocol):
    def append(self, model_name: str, entry: TranscriptEntry) -> TranscriptEntry: ...

    def remove_last(self, model_name: str) -> Optional[TranscriptEntry]: ...

    def replace_last(self, model_name: str, entry: TranscriptEntry) -> TranscriptEntry: ...

    def mutate_last_text(self, model_name: str, partial_text: str, latency_ms: float) -> Optional[TextEntry]: ...

    def last_entry(self, model_name: str) -> Optional[TranscriptEntry]: ...

    def set_last_benchmark(self, model_name: str, result: BenchmarkResult) -> Optional[TextEntry]: ...

    def clear(self, model_name: str) -> None: ...

    def list_entries(self, model_name: str) -> List[TranscriptEntry]: ...


class InMemoryTranscriptStore:
    """Per-model transcripts. Entries are replaced, never edited in place."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[TranscriptEntry]] = {}
        self._lock = RLock()

    def append(self, model_name: str, entry: TranscriptEntry) -> TranscriptEntry:
        with self._lock:
            self._entries.setdefault(model_name, []).append(entry)
            return entry

    def remove_last(self, model_name: str) -> Optional[TranscriptEntry]:
        with self._lock:
            entries = self._entries.get(model_name)
            if not entries:
                return None
            return entries.pop()

    def replace_last(self, model_name: str, entry: TranscriptEntry) -> TranscriptEntry:
        with self._lock:
            entries = self._entries.setdefault(model_name, [])
            if entries:
                entries[-1] = entry
            else:
                entries.append(entry)
            return entry

    def mutate_last_text(self, model_name: str, partial_text: str, latency_ms: float) -> Optional[TextEntry]:
        with self._lock:
            last = self.last_entry(model_name)
            if not isinstance(last, TextEntry):
                return None
            updated = last.model_copy(
                update={"content": last.content + partial_text, "latency_ms": latency_ms}
            )
            self._entries[model_name][-1] = updated
            return updated

    def set_last_benchmark(self, model_name: str, result: BenchmarkResult) -> Optional[TextEntry]:
        with self._lock:
            last = self.last_entry(model_name)
            if not isinstance(last, TextEntry):
                return None
            updated = last.model_copy(update={"benchmark": result})
            self._entries[model_name][-1] = updated
            return updated

    def last_entry(self, model_name: str) -> Optional[TranscriptEntry]:
        with self._lock:
            entries = self._entries.get(model_name)
            if not entries:
                return None
            return entries[-1]

    def clear(self, model_name: str) -> None:
        with self._lock:
            self._entries[model_name] = []

    def list_entries(self, model_name: str) -> List[TranscriptEntry]:
        with self._lock:
            return list(self._entries.get(model_name, []))

_store: InMemoryTranscriptStore | None = None


def get_transcript_store() -> InMemoryTranscriptStore:
    global _store
    if _store is None:
        _store = InMemoryTranscriptStore()
    return _store
