"""Runtime settings for turn orchestration and the local engine.

Values come from the process environment (optionally seeded from a ``.env``
file). Every knob that shapes turn timing is a named, overridable setting so
tests and hosts can tune it without patching module constants.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv


DEFAULT_MAX_TOKEN = 1024
DEFAULT_TOPK = 40
DEFAULT_TOPP = 0.9
DEFAULT_TEMPERATURE = 1.0
DEFAULT_ACCELERATOR = "GPU"
DEFAULT_ENGINE_BASE_URL = "http://127.0.0.1:11434"

# Fixed per-image prefill cost; a heuristic, not a measurement.
IMAGE_TOKEN_SURCHARGE = 257
READY_POLL_SECONDS = 0.1
WARMUP_SECONDS = 0.5
RESET_BACKOFF_SECONDS = 0.2

ACCELERATORS = ("CPU", "GPU")


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineConfig:
    """Options handed to the engine facade untouched."""

    model_name: str
    max_tokens: int = DEFAULT_MAX_TOKEN
    top_k: int = DEFAULT_TOPK
    top_p: float = DEFAULT_TOPP
    temperature: float = DEFAULT_TEMPERATURE
    accelerator: str = DEFAULT_ACCELERATOR
    support_image: bool = False
    base_url: str = DEFAULT_ENGINE_BASE_URL
    extra: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        model_name: str,
        *,
        support_image: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> "EngineConfig":
        env = env if env is not None else os.environ
        accelerator = (env.get("EDGECHAT_ACCELERATOR") or DEFAULT_ACCELERATOR).strip().upper()
        if accelerator not in ACCELERATORS:
            accelerator = DEFAULT_ACCELERATOR
        return cls(
            model_name=model_name,
            max_tokens=_env_int(env, "EDGECHAT_MAX_TOKENS", DEFAULT_MAX_TOKEN),
            top_k=_env_int(env, "EDGECHAT_TOPK", DEFAULT_TOPK),
            top_p=_env_float(env, "EDGECHAT_TOPP", DEFAULT_TOPP),
            temperature=_env_float(env, "EDGECHAT_TEMPERATURE", DEFAULT_TEMPERATURE),
            accelerator=accelerator,
            support_image=support_image,
            base_url=(env.get("EDGECHAT_ENGINE_BASE_URL") or DEFAULT_ENGINE_BASE_URL).rstrip("/"),
        )


@dataclass(frozen=True)
class TurnSettings:
    ready_poll_seconds: float = READY_POLL_SECONDS
    # 0 waits for the engine indefinitely.
    ready_timeout_seconds: float = 0.0
    warmup_seconds: float = WARMUP_SECONDS
    image_token_surcharge: int = IMAGE_TOKEN_SURCHARGE
    reset_backoff_seconds: float = RESET_BACKOFF_SECONDS
    # 0 retries session reset until it succeeds.
    reset_max_attempts: int = 0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "TurnSettings":
        env = env if env is not None else os.environ
        return cls(
            ready_poll_seconds=max(0.001, _env_float(env, "EDGECHAT_READY_POLL_SECONDS", READY_POLL_SECONDS)),
            ready_timeout_seconds=max(0.0, _env_float(env, "EDGECHAT_READY_TIMEOUT_SECONDS", 0.0)),
            warmup_seconds=max(0.0, _env_float(env, "EDGECHAT_WARMUP_SECONDS", WARMUP_SECONDS)),
            image_token_surcharge=max(0, _env_int(env, "EDGECHAT_IMAGE_TOKEN_SURCHARGE", IMAGE_TOKEN_SURCHARGE)),
            reset_backoff_seconds=max(0.0, _env_float(env, "EDGECHAT_RESET_BACKOFF_SECONDS", RESET_BACKOFF_SECONDS)),
            reset_max_attempts=max(0, _env_int(env, "EDGECHAT_RESET_MAX_ATTEMPTS", 0)),
        )


def load_settings(dotenv: bool = True) -> TurnSettings:
    """Read turn settings, loading ``.env`` first when present."""

    if dotenv:
        load_dotenv()
    return TurnSettings.from_env()
