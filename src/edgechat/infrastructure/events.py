"""Best-effort publication of turn and session lifecycle events over Redis.

Turn events go to ``edgechat.events.turn.<state>`` and reset outcomes to
``edgechat.events.session.reset``. Nothing is published unless ``REDIS_URL``
is set, and a broker outage never reaches the caller.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

from ..domain.turn_models import SessionState, TurnState

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore

logger = logging.getLogger("edgechat.events")

CHANNEL_PREFIX = "edgechat.events"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TurnLifecycleEvent(BaseModel):
    """A turn reaching a terminal state."""

    model: str
    turn_id: str
    state: TurnState
    error: Optional[str] = None
    stats: Dict[str, float] = Field(default_factory=dict)
    attachment: Optional[str] = None
    at: str = Field(default_factory=_now_iso)

    @property
    def channel(self) -> str:
        return f"{CHANNEL_PREFIX}.turn.{self.state.value}"


class SessionResetEvent(BaseModel):
    """Outcome of one reset request; ``state`` is the session state it left behind."""

    model: str
    state: Optional[SessionState] = None
    attempts: int = 0
    error: Optional[str] = None
    at: str = Field(default_factory=_now_iso)

    @property
    def channel(self) -> str:
        return f"{CHANNEL_PREFIX}.session.reset"


LifecycleEvent = Union[TurnLifecycleEvent, SessionResetEvent]


class LifecyclePublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        if redis is None:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            logger.debug("event_publisher_connect_failed", extra={"err": str(exc)})
            self._client = None

    def publish(self, event: LifecycleEvent) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        try:
            self._client.publish(event.channel, event.model_dump_json())
        except Exception as exc:
            logger.debug("event_publish_failed", extra={"channel": event.channel, "err": str(exc)})
            self._client = None
            return False
        return True


_publisher: Optional[LifecyclePublisher] = None


def _get_publisher() -> Optional[LifecyclePublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = LifecyclePublisher(url)
    return _publisher


def publish(event: LifecycleEvent) -> bool:
    publisher = _get_publisher()
    if not publisher:
        return False
    return publisher.publish(event)


def publish_turn_event(
    model: str,
    turn_id: str,
    state: TurnState,
    *,
    error: Optional[BaseException] = None,
    stats: Optional[Dict[str, float]] = None,
    attachment: Optional[str] = None,
) -> TurnLifecycleEvent:
    event = TurnLifecycleEvent(
        model=model,
        turn_id=turn_id,
        state=state,
        error=(str(error) or error.__class__.__name__) if error is not None else None,
        stats=dict(stats or {}),
        attachment=attachment,
    )
    publish(event)
    return event


def publish_reset_event(
    model: str,
    attempts: int,
    state: Optional[SessionState],
    error: Optional[BaseException] = None,
) -> SessionResetEvent:
    event = SessionResetEvent(
        model=model,
        state=state,
        attempts=attempts,
        error=str(error) if error is not None else None,
    )
    publish(event)
    return event
