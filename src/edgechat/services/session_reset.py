from __future__ import annotations

import logging
import time
from threading import Event, Thread
from typing import Callable, Optional

from ..core.state_machine import is_valid_session_transition
from ..domain.errors import ResetError
from ..domain.transcript_models import WarningEntry
from ..domain.turn_models import SessionState
from ..engine.base import EngineHandle, GenerationEngine
from ..infrastructure.events import publish_reset_event
from ..infrastructure.transcript_store import MessageSink
from ..observability.metrics import count_reset_attempt
from .model_manager import ModelRuntime
from .telemetry_sink import TelemetryEvent, record_event

logger = logging.getLogger("edgechat.reset")

ResetListener = Callable[[Optional[ResetError]], None]


class ResetRun:
    """Progress of one session reset; ``wait`` blocks until it settles."""

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self.attempts = 0
        self.error: Optional[ResetError] = None
        self._done = Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def succeeded(self) -> bool:
        return self.done and self.error is None

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def _finish(self, error: Optional[ResetError] = None) -> None:
        self.error = error
        self._done.set()


def _move_session(handle: EngineHandle, target: SessionState) -> None:
    if not is_valid_session_transition(handle.state, target):
        raise RuntimeError(f"Invalid session transition {handle.state.value} -> {target.value}")
    handle.state = target


class SessionResetLoop:
    def __init__(
        self,
        engine: GenerationEngine,
        sink: MessageSink,
        cancel: Callable[[str], None],
        backoff_seconds: float = 0.2,
        max_attempts: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._sink = sink
        self._cancel = cancel
        self._backoff = backoff_seconds
        self._max_attempts = max_attempts
        self._sleep = sleep

    def start(self, runtime: ModelRuntime, on_done: Optional[ResetListener] = None) -> ResetRun:
        reset_run = ResetRun(runtime.name)
        Thread(
            target=self.run,
            args=(runtime, reset_run, on_done),
            name=f"edgechat-reset-{runtime.name}",
            daemon=True,
        ).start()
        return reset_run

    def run(
        self,
        runtime: ModelRuntime,
        reset_run: Optional[ResetRun] = None,
        on_done: Optional[ResetListener] = None,
    ) -> ResetRun:
        reset_run = reset_run or ResetRun(runtime.name)
        model = runtime.name
        error: Optional[ResetError] = None

        with runtime.cond:
            while runtime.resetting:
                runtime.cond.wait()
            runtime.resetting = True

        try:
            self._sink.clear(model)
            self._cancel(model)

            with runtime.cond:
                handle = runtime.handle
            if handle is None:
                logger.debug("Nothing to reset for model %s", model)
            else:
                error = self._recreate(runtime, handle, reset_run)
        except Exception as exc:
            logger.exception("session_reset_crashed", extra={"model": model})
            error = ResetError(str(exc) or exc.__class__.__name__, attempts=reset_run.attempts)
        finally:
            with runtime.cond:
                runtime.resetting = False
                runtime.cond.notify_all()
            reset_run._finish(error)

        record_event(
            TelemetryEvent(
                name="session_reset",
                model=model,
                properties={"attempts": reset_run.attempts, "ok": error is None},
            )
        )
        with runtime.cond:
            handle = runtime.handle
        publish_reset_event(model, reset_run.attempts, handle.state if handle is not None else None, error)
        if on_done is not None:
            on_done(error)
        return reset_run

    def _recreate(self, runtime: ModelRuntime, handle: EngineHandle, reset_run: ResetRun) -> Optional[ResetError]:
        model = runtime.name
        _move_session(handle, SessionState.RESETTING)
        while True:
            reset_run.attempts += 1
            try:
                new_handle = self._engine.reset_session(handle)
            except Exception as exc:
                count_reset_attempt(model, ok=False)
                logger.debug(
                    "Failed to reset session. Trying again",
                    extra={"model": model, "attempt": reset_run.attempts, "err": str(exc)},
                )
                if self._max_attempts and reset_run.attempts >= self._max_attempts:
                    return self._give_up(runtime, handle, reset_run, exc)
                self._sleep(self._backoff)
                continue

            count_reset_attempt(model, ok=True)
            if new_handle is not handle:
                _move_session(handle, SessionState.DESTROYED)
            _move_session(new_handle, SessionState.ACTIVE)
            with runtime.cond:
                runtime.handle = new_handle
            logger.info("Session reset for model %s after %d attempt(s)", model, reset_run.attempts)
            return None

    def _give_up(
        self,
        runtime: ModelRuntime,
        handle: EngineHandle,
        reset_run: ResetRun,
        exc: BaseException,
    ) -> ResetError:
        model = runtime.name
        _move_session(handle, SessionState.DESTROYED)
        message = f"Failed to reset session after {reset_run.attempts} attempts."
        self._sink.append(model, WarningEntry(content=message, accelerator=runtime.accelerator))
        logger.error("session_reset_exhausted", extra={"model": model, "attempts": reset_run.attempts, "err": str(exc)})
        error = ResetError(message, attempts=reset_run.attempts)
        error.__cause__ = exc
        return error
