from __future__ import annotations

import dataclasses
import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from edgechat.config import EngineConfig, TurnSettings
from edgechat.domain.errors import EngineInitError
from edgechat.engine.base import EngineHandle
from edgechat.infrastructure.transcript_store import InMemoryTranscriptStore
from edgechat.services.model_manager import ModelManager
from edgechat.services.turn_orchestrator import TurnOrchestrator


class FakeClock:
    """Returns ``now`` and then moves it forward by ``step``."""

    def __init__(self, start: float = 100.0, step: float = 0.5) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedEngine:
    """In-process engine double.

    With ``auto=True`` every generation replays ``tokens`` synchronously, the
    last one flagged done. With ``auto=False`` the test drives the stream
    through :meth:`emit` and :meth:`fail`.
    """

    name = "scripted"

    def __init__(
        self,
        tokens: Sequence[str] = ("Hel", "lo"),
        auto: bool = True,
        init_error: Optional[str] = None,
        reset_failures: int = 0,
        fail_generate: Optional[BaseException] = None,
        reset_gate: Optional[threading.Event] = None,
    ) -> None:
        self.tokens = list(tokens)
        self.auto = auto
        self.init_error = init_error
        self.reset_failures = reset_failures
        self.fail_generate = fail_generate
        self.reset_gate = reset_gate
        self.calls: List[Tuple[str, object]] = []
        self.attached_text: List[str] = []
        self.attached_images: List[bytes] = []
        self.listeners: Dict[str, Tuple[Callable, Optional[Callable]]] = {}
        self.generating: Dict[str, bool] = {}
        self.resetting = False
        self.overlaps = 0
        self.reset_attempts = 0
        self.cancelled = 0
        self.closed = 0
        self.started = threading.Event()
        self._sessions = itertools.count(1)

    def initialize(self, config: EngineConfig) -> EngineHandle:
        self.calls.append(("initialize", config.model_name))
        if self.init_error:
            raise EngineInitError(self.init_error)
        return EngineHandle(engine=self, session=next(self._sessions), config=config)

    def size_in_tokens(self, handle: EngineHandle, text: str) -> int:
        return len(text.split())

    def attach_text(self, handle: EngineHandle, text: str) -> None:
        self.calls.append(("attach_text", text))
        self.attached_text.append(text)

    def attach_image(self, handle: EngineHandle, image: bytes) -> None:
        self.calls.append(("attach_image", image))
        self.attached_images.append(image)

    def generate_async(self, handle: EngineHandle, on_partial, on_error=None) -> None:
        model = handle.config.model_name
        self.calls.append(("generate", model))
        if self.resetting:
            self.overlaps += 1
        if self.fail_generate is not None:
            raise self.fail_generate
        self.listeners[model] = (on_partial, on_error)
        self.generating[model] = True
        self.started.set()
        if self.auto:
            for index, token in enumerate(self.tokens):
                on_partial(token, index == len(self.tokens) - 1)
            self.generating[model] = False

    def emit(self, model: str, text: str, done: bool = False) -> None:
        on_partial, _ = self.listeners[model]
        if done:
            self.generating[model] = False
        on_partial(text, done)

    def fail(self, model: str, exc: BaseException) -> None:
        _, on_error = self.listeners[model]
        self.generating[model] = False
        on_error(exc)

    def cancel(self, handle: EngineHandle) -> None:
        self.calls.append(("cancel", handle.config.model_name))
        self.cancelled += 1
        self.generating[handle.config.model_name] = False

    def reset_session(self, handle: EngineHandle) -> EngineHandle:
        self.resetting = True
        try:
            self.reset_attempts += 1
            if self.generating.get(handle.config.model_name):
                self.overlaps += 1
            if self.reset_gate is not None:
                self.reset_gate.wait(5)
            if self.reset_attempts <= self.reset_failures:
                raise RuntimeError(f"reset attempt {self.reset_attempts} failed")
            return dataclasses.replace(handle, session=next(self._sessions))
        finally:
            self.resetting = False

    def close(self, handle: EngineHandle) -> None:
        self.closed += 1


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def build_orchestrator(
    engine: ScriptedEngine,
    store: InMemoryTranscriptStore,
    settings: TurnSettings,
    *,
    models: Sequence[str] = ("gemma",),
    initialize: bool = True,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    accelerator: str = "GPU",
) -> TurnOrchestrator:
    manager = ModelManager(engine)
    for name in models:
        manager.register(EngineConfig(model_name=name, accelerator=accelerator))
        if initialize:
            manager.initialize_model(name).join(2)
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    if sleep is not None:
        kwargs["sleep"] = sleep
    return TurnOrchestrator(manager, sink=store, settings=settings, **kwargs)


class RecordingPublisher:
    """Stands in for the Redis publisher and keeps every lifecycle event."""

    def __init__(self) -> None:
        self.events: List[Any] = []

    def publish(self, event: Any) -> bool:
        self.events.append(event)
        return True

    def of(self, model: str) -> List[Any]:
        return [e for e in self.events if e.model == model]
