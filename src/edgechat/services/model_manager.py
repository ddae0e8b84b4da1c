from __future__ import annotations

import logging
from threading import Condition, Event, RLock, Thread
from typing import TYPE_CHECKING, Callable, Dict, Optional

from ..config import EngineConfig
from ..domain.turn_models import ModelStatus, SessionState
from ..engine.base import EngineHandle, GenerationEngine
from .telemetry_sink import TelemetryEvent, record_event

if TYPE_CHECKING:  # pragma: no cover
    from .turn_orchestrator import TurnRun

logger = logging.getLogger("edgechat.engine")

InitListener = Callable[[str], None]


class ModelRuntime:
    """Mutable per-model state shared by turns, resets and initialisation.

    ``cond`` guards every field below; turn callbacks, cancellation and
    session reset for one model all serialise through it.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self.handle: Optional[EngineHandle] = None
        self.init_error: Optional[str] = None
        self.ready = Event()
        self.cond = Condition(RLock())
        self.in_progress = False
        self.preparing = False
        self.resetting = False
        self.current_run: Optional["TurnRun"] = None

    @property
    def name(self) -> str:
        return self.config.model_name

    @property
    def accelerator(self) -> str:
        return self.config.accelerator

    def clear_progress(self) -> None:
        self.in_progress = False
        self.preparing = False

    def status(self) -> ModelStatus:
        with self.cond:
            return ModelStatus(
                model_name=self.name,
                in_progress=self.in_progress,
                preparing=self.preparing,
                resetting=self.resetting,
                session_state=self.handle.state if self.handle is not None else None,
            )


class ModelManager:
    def __init__(self, engine: GenerationEngine) -> None:
        self._engine = engine
        self._runtimes: Dict[str, ModelRuntime] = {}
        self._lock = RLock()

    @property
    def engine(self) -> GenerationEngine:
        return self._engine

    def register(self, config: EngineConfig) -> ModelRuntime:
        with self._lock:
            runtime = self._runtimes.get(config.model_name)
            if runtime is None:
                runtime = ModelRuntime(config)
                self._runtimes[config.model_name] = runtime
            return runtime

    def runtime(self, model_name: str) -> ModelRuntime:
        with self._lock:
            runtime = self._runtimes.get(model_name)
        if runtime is None:
            raise KeyError(f"Unknown model: {model_name}")
        return runtime

    def initialize_model(self, model_name: str, on_done: Optional[InitListener] = None) -> Thread:
        """Create the engine on a background thread.

        ``on_done`` receives an empty string on success or the error message.
        Turns waiting for this model are woken either way.
        """

        runtime = self.runtime(model_name)
        with runtime.cond:
            runtime.init_error = None
            runtime.ready.clear()

        def worker() -> None:
            logger.debug("Initializing model %s", model_name)
            try:
                handle = self._engine.initialize(runtime.config)
            except Exception as exc:
                message = str(exc) or "Unknown error"
                logger.error("engine_init_failed", extra={"model": model_name, "err": message})
                with runtime.cond:
                    runtime.init_error = message
                    runtime.ready.set()
                    runtime.cond.notify_all()
                record_event(TelemetryEvent(name="engine_init_failed", model=model_name, properties={"error": message}))
                if on_done is not None:
                    on_done(message)
                return

            handle.state = SessionState.ACTIVE
            with runtime.cond:
                runtime.handle = handle
                runtime.ready.set()
                runtime.cond.notify_all()
            logger.info("Model %s initialized", model_name)
            if on_done is not None:
                on_done("")

        thread = Thread(target=worker, name=f"edgechat-init-{model_name}", daemon=True)
        thread.start()
        return thread

    def cleanup_model(self, model_name: str) -> None:
        runtime = self.runtime(model_name)
        with runtime.cond:
            handle = runtime.handle
            if handle is None:
                return
            runtime.handle = None
            runtime.ready.clear()
        try:
            # Closing the engine also closes its session.
            self._engine.close(handle)
        except Exception as exc:
            logger.warning("engine_close_failed", extra={"model": model_name, "err": str(exc)})
        handle.state = SessionState.DESTROYED
        handle.run_cleanup()
        logger.debug("Clean up done for model %s", model_name)
