"""Prometheus metrics for turn benchmarks and session resets."""

from __future__ import annotations

from typing import Mapping

from prometheus_client import Counter, Histogram

TIME_TO_FIRST_TOKEN = Histogram(
    "edgechat_time_to_first_token_seconds",
    "Time from generation request to first streamed token",
    labelnames=("model", "accelerator"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

TURN_LATENCY = Histogram(
    "edgechat_turn_latency_seconds",
    "End-to-end latency of a completed turn",
    labelnames=("model", "accelerator"),
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Throughput buckets (tokens per second)
PREFILL_SPEED = Histogram(
    "edgechat_prefill_tokens_per_second",
    "Prompt processing speed",
    labelnames=("model", "accelerator"),
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000),
)

DECODE_SPEED = Histogram(
    "edgechat_decode_tokens_per_second",
    "Token generation speed after the first token",
    labelnames=("model", "accelerator"),
    buckets=(1, 5, 10, 20, 40, 80, 160, 320),
)

TURN_OUTCOMES = Counter(
    "edgechat_turns_total",
    "Turns by terminal state",
    labelnames=("model", "state"),
)

RESET_ATTEMPTS = Counter(
    "edgechat_session_reset_attempts_total",
    "Session recreation attempts",
    labelnames=("model", "outcome"),
)


def observe_benchmark(model: str, accelerator: str, stats: Mapping[str, float]) -> None:
    labels = {"model": model, "accelerator": accelerator or "unknown"}
    TIME_TO_FIRST_TOKEN.labels(**labels).observe(stats.get("time_to_first_token", 0.0))
    PREFILL_SPEED.labels(**labels).observe(stats.get("prefill_speed", 0.0))
    DECODE_SPEED.labels(**labels).observe(stats.get("decode_speed", 0.0))
    TURN_LATENCY.labels(**labels).observe(stats.get("latency", 0.0))


def count_turn(model: str, state: str) -> None:
    TURN_OUTCOMES.labels(model=model, state=state).inc()


def count_reset_attempt(model: str, ok: bool) -> None:
    RESET_ATTEMPTS.labels(model=model, outcome="success" if ok else "error").inc()
