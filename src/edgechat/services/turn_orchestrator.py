"""Turn orchestration: prompt preparation, streaming, benchmarks, cancellation.

Every model owns a :class:`ModelRuntime`. A turn runs on its own daemon
thread; the engine's result callbacks, ``cancel`` and session reset all take
the runtime's condition lock, so for one model at most one of them mutates the
transcript at a time. Callbacks for a turn that is no longer current (or has
already reached a terminal state) are dropped.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from threading import Event, Thread
from typing import Callable, Dict, List, Optional

from ..config import TurnSettings
from ..core.state_machine import is_valid_transition
from ..domain.errors import EngineInitError, GenerationError, ResetError
from ..domain.transcript_models import LoadingEntry, TextEntry, WarningEntry
from ..domain.turn_models import (
    TERMINAL_TURN_STATES,
    Attachment,
    ModelStatus,
    SessionState,
    StreamEvent,
    Turn,
    TurnState,
)
from ..engine.base import EngineHandle
from ..infrastructure.events import publish_turn_event
from ..infrastructure.transcript_store import MessageSink, get_transcript_store
from ..observability.metrics import count_turn, observe_benchmark
from .benchmark import BenchmarkSample, to_result
from .doc_ingest import DocumentIngestor
from .model_manager import ModelManager, ModelRuntime
from .session_reset import ResetRun, SessionResetLoop
from .telemetry_sink import TelemetryEvent, record_event, record_metric

logger = logging.getLogger("edgechat.turn")

TurnErrorListener = Callable[[BaseException], None]

RECOVERY_WARNING = "Error occurred. Re-initializing the session."


class TurnRun:
    def __init__(self, turn: Turn, on_error: Optional[TurnErrorListener] = None) -> None:
        self.turn = turn
        self.state = TurnState.IDLE
        self.prompt: Optional[str] = None
        self.attachment: Optional[Attachment] = None
        self.sample: Optional[BenchmarkSample] = None
        self.handle: Optional[EngineHandle] = None
        self.error: Optional[BaseException] = None
        self.events: List[StreamEvent] = []
        self.loading_shown = False
        self.text_started = False
        self._on_error = on_error
        self._done = Event()

    @property
    def model_name(self) -> str:
        return self.turn.model_name

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TURN_STATES

    @property
    def stats(self) -> Optional[Dict[str, float]]:
        return self.sample.stats if self.sample is not None else None

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def transition(self, target: TurnState) -> None:
        if not is_valid_transition(self.state, target):
            raise RuntimeError(f"Invalid turn transition {self.state.value} -> {target.value}")
        self.state = target
        if target in TERMINAL_TURN_STATES:
            self._done.set()


class TurnOrchestrator:
    def __init__(
        self,
        models: ModelManager,
        sink: Optional[MessageSink] = None,
        ingestor: Optional[DocumentIngestor] = None,
        settings: Optional[TurnSettings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._models = models
        self._engine = models.engine
        self._sink = sink if sink is not None else get_transcript_store()
        self._ingestor = ingestor or DocumentIngestor(self._sink)
        self._settings = settings or TurnSettings.from_env()
        self._clock = clock
        self._sleep = sleep
        self._resets = SessionResetLoop(
            self._engine,
            self._sink,
            cancel=self.cancel,
            backoff_seconds=self._settings.reset_backoff_seconds,
            max_attempts=self._settings.reset_max_attempts,
            sleep=sleep,
        )

    @property
    def models(self) -> ModelManager:
        return self._models

    @property
    def sink(self) -> MessageSink:
        return self._sink

    # ----------------------------------------------------------------- turns

    def generate(
        self,
        model_name: str,
        user_text: str,
        image: Optional[bytes] = None,
        attachment_ref: Optional[str] = None,
        on_error: Optional[TurnErrorListener] = None,
    ) -> TurnRun:
        """Start a turn and return immediately; the work happens on a worker thread."""

        runtime = self._models.runtime(model_name)
        run = TurnRun(
            Turn(model_name=model_name, user_text=user_text, image=image, attachment_ref=attachment_ref),
            on_error=on_error,
        )
        with runtime.cond:
            current = runtime.current_run
            if current is not None and not current.is_terminal:
                raise RuntimeError(f"A turn is already in progress for model '{model_name}'")
            runtime.current_run = run
            run.transition(TurnState.PREPARING)
            runtime.in_progress = True
            runtime.preparing = True

        logger.debug("turn_submitted", extra={"model": model_name, "turn_id": run.turn.turn_id})
        Thread(target=self._run_turn, args=(runtime, run), name=f"edgechat-turn-{model_name}", daemon=True).start()
        return run

    def _run_turn(self, runtime: ModelRuntime, run: TurnRun) -> None:
        model = runtime.name
        turn = run.turn
        try:
            prompt = turn.user_text
            if turn.attachment_ref:
                result = self._ingestor.ingest(model, turn.attachment_ref, turn.user_text, runtime.accelerator)
                run.attachment = result.attachment
                prompt = result.prompt
            run.prompt = prompt

            with runtime.cond:
                if run.is_terminal:
                    return
                self._sink.append(model, LoadingEntry(accelerator=runtime.accelerator))
                run.loading_shown = True

            if self._wait_for_handle(runtime, run) is None:
                return
            if self._settings.warmup_seconds > 0:
                self._sleep(self._settings.warmup_seconds)

            with runtime.cond:
                while runtime.resetting and not run.is_terminal:
                    runtime.cond.wait()
                if run.is_terminal:
                    return
                # A reset may have swapped the session while we waited.
                handle = runtime.handle
                if handle is None or handle.state is not SessionState.ACTIVE:
                    raise GenerationError(f"No active engine session for model '{model}'")
                run.handle = handle

                prefill_tokens = self._engine.size_in_tokens(handle, prompt)
                if turn.image is not None:
                    prefill_tokens += self._settings.image_token_surcharge
                run.sample = BenchmarkSample(prefill_tokens=prefill_tokens, start=self._clock())
                handle.on_cleanup = lambda: self._on_engine_cleanup(runtime, run)

                logger.debug(
                    "turn_generate",
                    extra={"model": model, "turn_id": turn.turn_id, "prefill_tokens": prefill_tokens},
                )
                self._engine.attach_text(handle, prompt)
                if turn.image is not None:
                    self._engine.attach_image(handle, turn.image)
                self._engine.generate_async(
                    handle,
                    on_partial=lambda text, done: self._on_partial(runtime, run, text, done),
                    on_error=lambda exc: self._fail(runtime, run, exc),
                )
        except Exception as exc:
            logger.exception("turn_setup_failed", extra={"model": model, "turn_id": turn.turn_id})
            self._fail(runtime, run, exc)

    def _wait_for_handle(self, runtime: ModelRuntime, run: Optional[TurnRun] = None) -> Optional[EngineHandle]:
        """Block until the model's engine is ready.

        Returns None when ``run`` went terminal meanwhile. Raises
        ``EngineInitError`` when initialisation failed or the readiness
        timeout elapsed.
        """

        timeout = self._settings.ready_timeout_seconds
        deadline = self._clock() + timeout if timeout > 0 else None
        while True:
            with runtime.cond:
                if run is not None and run.is_terminal:
                    return None
                if runtime.handle is not None:
                    return runtime.handle
                if runtime.init_error:
                    raise EngineInitError(runtime.init_error)
            if deadline is not None and self._clock() >= deadline:
                raise EngineInitError(f"Model '{runtime.name}' not ready after {timeout:g}s")
            runtime.ready.wait(self._settings.ready_poll_seconds)

    def _on_partial(self, runtime: ModelRuntime, run: TurnRun, text: str, done: bool) -> None:
        now = self._clock()
        model = runtime.name
        with runtime.cond:
            if run.is_terminal or runtime.current_run is not run:
                logger.debug("stray_result_dropped", extra={"model": model, "turn_id": run.turn.turn_id})
                return
            run.events.append(StreamEvent(text=text, done=done, timestamp=now))

            if run.sample.record_event(now):
                run.transition(TurnState.STREAMING)
                runtime.preparing = False
            if not run.text_started:
                entry = TextEntry(content="", side="agent", accelerator=runtime.accelerator)
                if isinstance(self._sink.last_entry(model), LoadingEntry):
                    self._sink.replace_last(model, entry)
                else:
                    self._sink.append(model, entry)
                run.text_started = True

            latency_ms = (now - run.sample.start) * 1000.0 if done else -1.0
            self._sink.mutate_last_text(model, text, latency_ms)
            if not done:
                return

            stats = run.sample.finalize(now)
            self._sink.set_last_benchmark(model, to_result(stats, runtime.accelerator))
            run.transition(TurnState.COMPLETED)
            runtime.clear_progress()
            runtime.cond.notify_all()

        self._report_completed(runtime, run, stats)

    def _fail(self, runtime: ModelRuntime, run: TurnRun, exc: BaseException) -> None:
        with runtime.cond:
            if run.is_terminal:
                logger.debug("late_error_dropped", extra={"model": runtime.name, "err": str(exc)})
                return
            if not isinstance(exc, (EngineInitError, GenerationError)):
                wrapped = GenerationError(str(exc) or exc.__class__.__name__)
                wrapped.__cause__ = exc
                exc = wrapped
            run.error = exc
            run.transition(TurnState.FAILED)
            if runtime.current_run is run:
                runtime.clear_progress()
            runtime.cond.notify_all()

        logger.error("turn_failed", extra={"model": runtime.name, "turn_id": run.turn.turn_id, "err": str(exc)})
        count_turn(runtime.name, TurnState.FAILED.value)
        record_event(
            TelemetryEvent(
                name="turn_failed",
                model=runtime.name,
                properties={"turn_id": run.turn.turn_id, "error": str(exc), "error_type": exc.__class__.__name__},
            )
        )
        publish_turn_event(runtime.name, run.turn.turn_id, TurnState.FAILED, error=exc)
        if run._on_error is not None:
            run._on_error(exc)

    def _on_engine_cleanup(self, runtime: ModelRuntime, run: TurnRun) -> None:
        with runtime.cond:
            if runtime.current_run is run and not run.is_terminal:
                run.transition(TurnState.CANCELLED)
                runtime.clear_progress()
                runtime.cond.notify_all()
                logger.debug("turn_released_on_cleanup", extra={"model": runtime.name, "turn_id": run.turn.turn_id})

    def _report_completed(self, runtime: ModelRuntime, run: TurnRun, stats: Dict[str, float]) -> None:
        model = runtime.name
        dims = {"model": model, "accelerator": runtime.accelerator}
        for name, value in stats.items():
            record_metric(name=name, value=value, properties=dims)
        observe_benchmark(model, runtime.accelerator, stats)
        count_turn(model, TurnState.COMPLETED.value)
        attachment_status = run.attachment.status if run.attachment is not None else None
        record_event(
            TelemetryEvent(
                name="turn_completed",
                model=model,
                properties={"turn_id": run.turn.turn_id, "stats": dict(stats), "attachment": attachment_status},
            )
        )
        publish_turn_event(model, run.turn.turn_id, TurnState.COMPLETED, stats=stats, attachment=attachment_status)

    # ---------------------------------------------------------- cancellation

    def cancel(self, model_name: str) -> None:
        """Stop the model's turn, if any. Safe to call repeatedly."""

        runtime = self._models.runtime(model_name)
        with runtime.cond:
            if isinstance(self._sink.last_entry(model_name), LoadingEntry):
                self._sink.remove_last(model_name)
            run = runtime.current_run
            cancelled = run is not None and not run.is_terminal
            if cancelled:
                run.transition(TurnState.CANCELLED)
            runtime.clear_progress()
            handle = run.handle if run is not None and run.handle is not None else runtime.handle
            runtime.cond.notify_all()

        if handle is not None:
            try:
                self._engine.cancel(handle)
            except Exception as exc:
                logger.warning("engine_cancel_failed", extra={"model": model_name, "err": str(exc)})

        if cancelled:
            logger.info("Turn cancelled for model %s", model_name)
            count_turn(model_name, TurnState.CANCELLED.value)
            record_event(TelemetryEvent(name="turn_cancelled", model=model_name, properties={"turn_id": run.turn.turn_id}))
            publish_turn_event(model_name, run.turn.turn_id, TurnState.CANCELLED)

    # ---------------------------------------------------------------- reset

    def reset_session(
        self,
        model_name: str,
        on_done: Optional[Callable[[Optional[ResetError]], None]] = None,
    ) -> ResetRun:
        runtime = self._models.runtime(model_name)
        return self._resets.start(runtime, on_done)

    # ------------------------------------------------------- host workflows

    def run_again(
        self,
        model_name: str,
        entry: TextEntry,
        on_error: Optional[TurnErrorListener] = None,
    ) -> "Future[TurnRun]":
        """Resubmit a previous user message once the model is ready."""

        runtime = self._models.runtime(model_name)
        future: "Future[TurnRun]" = Future()

        def worker() -> None:
            try:
                self._wait_for_handle(runtime)
                self._sink.append(model_name, entry.clone())
                future.set_result(self.generate(model_name, entry.content, on_error=on_error))
            except Exception as exc:
                logger.error("run_again_failed", extra={"model": model_name, "err": str(exc)})
                future.set_exception(exc)

        Thread(target=worker, name=f"edgechat-rerun-{model_name}", daemon=True).start()
        return future

    def recover(
        self,
        model_name: str,
        triggered: TextEntry,
        on_error: Optional[TurnErrorListener] = None,
    ) -> TurnRun:
        """Tear the engine down, note the failure, re-initialise and resubmit."""

        runtime = self._models.runtime(model_name)
        self._models.cleanup_model(model_name)
        with runtime.cond:
            if isinstance(self._sink.last_entry(model_name), LoadingEntry):
                self._sink.remove_last(model_name)
            last = self._sink.last_entry(model_name)
            if last is not None and last.entry_id == triggered.entry_id:
                self._sink.remove_last(model_name)
            self._sink.append(model_name, WarningEntry(content=RECOVERY_WARNING, accelerator=runtime.accelerator))
            self._sink.append(model_name, triggered)
        logger.warning("session_recovering", extra={"model": model_name})
        self._models.initialize_model(model_name)
        return self.generate(model_name, triggered.content, on_error=on_error)

    def status(self, model_name: str) -> ModelStatus:
        return self._models.runtime(model_name).status()
