"""Generation engine facade."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from ..config import EngineConfig
from ..domain.turn_models import SessionState

ResultListener = Callable[[str, bool], None]
ErrorListener = Callable[[BaseException], None]
CleanUpListener = Callable[[], None]


@dataclass
class EngineHandle:
    """One engine plus its current session, owned by a single model runtime.

    ``on_cleanup`` travels with the session: whoever tears the engine down
    fires it once so in-flight turn state can be released.
    """

    engine: Any
    session: Any
    config: EngineConfig
    state: SessionState = SessionState.CREATED
    on_cleanup: Optional[CleanUpListener] = None

    def run_cleanup(self) -> None:
        callback, self.on_cleanup = self.on_cleanup, None
        if callback is not None:
            callback()


class GenerationEngine(Protocol):
    name: str

    def initialize(self, config: EngineConfig) -> EngineHandle:
        """Create engine and session. Raises ``EngineInitError``."""
        ...

    def size_in_tokens(self, handle: EngineHandle, text: str) -> int:
        ...

    def attach_text(self, handle: EngineHandle, text: str) -> None:
        ...

    def attach_image(self, handle: EngineHandle, image: bytes) -> None:
        ...

    def generate_async(
        self,
        handle: EngineHandle,
        on_partial: ResultListener,
        on_error: Optional[ErrorListener] = None,
    ) -> None:
        """Start generation; events arrive in order, the last with ``done=True``."""
        ...

    def cancel(self, handle: EngineHandle) -> None:
        ...

    def reset_session(self, handle: EngineHandle) -> EngineHandle:
        """Destroy and recreate the session, keeping the engine.

        Implementations return a handle that shares ``engine`` and
        ``on_cleanup`` with the old one (``dataclasses.replace``).
        """
        ...

    def close(self, handle: EngineHandle) -> None:
        ...
