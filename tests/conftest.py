import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT, ROOT / "src"):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


@pytest.fixture(autouse=True)
def _no_event_publisher(monkeypatch):
    """Keep lifecycle events local; tests never talk to a real Redis."""
    from edgechat.infrastructure import events

    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setattr(events, "_publisher", None)


@pytest.fixture
def store():
    from edgechat.infrastructure.transcript_store import InMemoryTranscriptStore

    return InMemoryTranscriptStore()


@pytest.fixture
def settings():
    from edgechat.config import TurnSettings

    return TurnSettings(
        ready_poll_seconds=0.01,
        warmup_seconds=0.0,
        reset_backoff_seconds=0.2,
    )
