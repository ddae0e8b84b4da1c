"""Local engine adapter for an Ollama-compatible ``/api/generate`` server.

Session state is the ``context`` array the server returns at the end of each
generation; it is fed back on the next call so the conversation carries over.
Resetting the session drops it.
"""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import EngineConfig
from ..domain.errors import EngineInitError, GenerationError
from .base import EngineHandle, ErrorListener, ResultListener

LOG = logging.getLogger("edgechat.engine")

# Rough chars-per-token ratio; prefill accounting is an estimate.
_CHARS_PER_TOKEN = 4


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@dataclass
class _Generation:
    """One ``/api/generate`` call; cancelling it never touches a later call."""

    cancel_event: threading.Event = field(default_factory=threading.Event)
    response: Optional[requests.Response] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class OllamaSession:
    context: Optional[List[int]] = None
    prompt_chunks: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    current: Optional[_Generation] = None
    closed: bool = False

    def is_current(self, generation: _Generation) -> bool:
        return self.current is generation and not generation.cancelled


def _engine_options(config: EngineConfig) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "num_predict": config.max_tokens,
        "temperature": config.temperature,
        "top_k": config.top_k,
        "top_p": config.top_p,
    }
    if config.accelerator == "CPU":
        options["num_gpu"] = 0
    options.update(config.extra)
    return options


class OllamaEngine:
    name = "ollama"

    def __init__(
        self,
        session_factory: Callable[[], requests.Session] = _build_session,
        connect_timeout: int = 3,
        read_timeout: int = 120,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = (connect_timeout, read_timeout)

    def initialize(self, config: EngineConfig) -> EngineHandle:
        LOG.debug("engine_initializing", extra={"model": config.model_name, "base_url": config.base_url})
        http = self._session_factory()
        try:
            self._check_model(http, config)
        except requests.exceptions.RequestException as exc:
            http.close()
            raise EngineInitError(f"Model '{config.model_name}' unavailable at {config.base_url}: {exc}") from exc
        return EngineHandle(engine=http, session=OllamaSession(), config=config)

    def _check_model(self, http: requests.Session, config: EngineConfig) -> None:
        resp = http.post(
            f"{config.base_url}/api/show",
            json={"model": config.model_name},
            timeout=(self._timeout[0], 30),
        )
        resp.raise_for_status()

    def size_in_tokens(self, handle: EngineHandle, text: str) -> int:
        if not text:
            return 0
        return max(1, len(text) // _CHARS_PER_TOKEN)

    def attach_text(self, handle: EngineHandle, text: str) -> None:
        handle.session.prompt_chunks.append(text)

    def attach_image(self, handle: EngineHandle, image: bytes) -> None:
        if not handle.config.support_image:
            raise GenerationError(f"Model '{handle.config.model_name}' was not configured for images")
        handle.session.images.append(base64.b64encode(image).decode("ascii"))

    def generate_async(
        self,
        handle: EngineHandle,
        on_partial: ResultListener,
        on_error: Optional[ErrorListener] = None,
    ) -> None:
        session: OllamaSession = handle.session
        if session.closed:
            raise GenerationError("Engine session is closed")
        config = handle.config
        payload: Dict[str, Any] = {
            "model": config.model_name,
            "prompt": "".join(session.prompt_chunks),
            "stream": True,
            "options": _engine_options(config),
        }
        if session.images:
            payload["images"] = list(session.images)
        if session.context:
            payload["context"] = session.context
        session.prompt_chunks.clear()
        session.images.clear()

        self.cancel(handle)
        generation = _Generation()
        session.current = generation

        threading.Thread(
            target=self._stream,
            args=(handle.engine, config, session, generation, payload, on_partial, on_error),
            name=f"edgechat-engine-{config.model_name}",
            daemon=True,
        ).start()

    def _stream(
        self,
        http: requests.Session,
        config: EngineConfig,
        session: OllamaSession,
        generation: _Generation,
        payload: Dict[str, Any],
        on_partial: ResultListener,
        on_error: Optional[ErrorListener],
    ) -> None:
        LOG.debug("engine_stream", extra={"model": config.model_name, "base_url": config.base_url})
        try:
            with http.post(
                f"{config.base_url}/api/generate",
                json=payload,
                timeout=self._timeout,
                stream=True,
            ) as resp:
                # Cancel may land while the request was still connecting.
                if not session.is_current(generation):
                    return
                resp.raise_for_status()
                generation.response = resp
                for raw_line in resp.iter_lines():
                    if not session.is_current(generation):
                        return
                    if not raw_line:
                        continue
                    try:
                        data = json.loads(raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line)
                    except json.JSONDecodeError:
                        continue
                    if data.get("error"):
                        raise GenerationError(str(data["error"]))
                    token = data.get("response") or ""
                    if data.get("done"):
                        context = data.get("context")
                        if isinstance(context, list):
                            session.context = context
                        on_partial(token, True)
                        return
                    if token:
                        on_partial(token, False)
            if session.is_current(generation):
                # Server closed the stream without a final record.
                on_partial("", True)
        except Exception as exc:
            if not session.is_current(generation):
                LOG.debug("engine_stream_closed_after_cancel", extra={"model": config.model_name})
                return
            LOG.warning("engine_stream_failed", extra={"model": config.model_name, "err": str(exc)})
            if on_error is not None:
                on_error(exc)
        finally:
            generation.response = None

    def cancel(self, handle: EngineHandle) -> None:
        generation = handle.session.current
        if generation is None:
            return
        generation.cancel_event.set()
        resp = generation.response
        if resp is not None:
            resp.close()

    def reset_session(self, handle: EngineHandle) -> EngineHandle:
        LOG.debug("engine_session_reset", extra={"model": handle.config.model_name})
        self.cancel(handle)
        handle.session.closed = True
        self._check_model(handle.engine, handle.config)
        return dataclasses.replace(handle, session=OllamaSession())

    def close(self, handle: EngineHandle) -> None:
        self.cancel(handle)
        handle.session.closed = True
        handle.engine.close()
