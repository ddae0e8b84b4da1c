"""Turn benchmark stats derived from stream event timestamps.

All timestamps are seconds (``time.time()`` style floats). The derived block
always holds four finite, non-negative numbers:

* ``time_to_first_token`` - seconds from the generation request to the first event
* ``prefill_speed`` - estimated prompt tokens per second of TTFT
* ``decode_speed`` - events after the first, per second after the first
* ``latency`` - seconds from the request to the terminal event
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional

from ..domain.transcript_models import BenchmarkResult, Stat

STATS = [
    Stat(id="time_to_first_token", label="1st token", unit="sec"),
    Stat(id="prefill_speed", label="Prefill speed", unit="tokens/s"),
    Stat(id="decode_speed", label="Decode speed", unit="tokens/s"),
    Stat(id="latency", label="Latency", unit="sec"),
]


def _finite(value: float) -> float:
    if math.isnan(value) or math.isinf(value) or value < 0:
        return 0.0
    return value


def time_to_first_token(start: float, first_token_ts: float) -> float:
    return _finite(first_token_ts - start)


def prefill_speed(prefill_tokens: int, ttft: float) -> float:
    if ttft <= 0:
        return 0.0
    return _finite(prefill_tokens / ttft)


def decode_speed(decode_tokens: int, first_token_ts: float, last_ts: float) -> float:
    elapsed = last_ts - first_token_ts
    if elapsed <= 0:
        return 0.0
    return _finite(decode_tokens / elapsed)


def derive_stats(
    start: float,
    first_token_ts: float,
    prefill_tokens: int,
    now: float,
    decode_tokens: int,
) -> Dict[str, float]:
    ttft = time_to_first_token(start, first_token_ts)
    return {
        "time_to_first_token": ttft,
        "prefill_speed": prefill_speed(prefill_tokens, ttft),
        "decode_speed": decode_speed(decode_tokens, first_token_ts, now),
        "latency": _finite(now - start),
    }


@dataclass
class BenchmarkSample:
    prefill_tokens: int
    start: float
    first_token_ts: Optional[float] = None
    decode_tokens: int = 0
    ttft: float = 0.0
    prefill_speed: float = 0.0
    stats: Optional[Dict[str, float]] = None

    @property
    def finalized(self) -> bool:
        return self.stats is not None

    def record_event(self, ts: float) -> bool:
        """Account for one stream event. Returns True for the first one."""

        if self.first_token_ts is None:
            self.first_token_ts = ts
            self.ttft = time_to_first_token(self.start, ts)
            self.prefill_speed = prefill_speed(self.prefill_tokens, self.ttft)
            return True
        self.decode_tokens += 1
        return False

    def finalize(self, ts: float) -> Dict[str, float]:
        if self.stats is not None:
            raise RuntimeError("Benchmark sample already finalized")
        first = self.first_token_ts if self.first_token_ts is not None else ts
        self.stats = derive_stats(self.start, first, self.prefill_tokens, ts, self.decode_tokens)
        return dict(self.stats)


def to_result(stats: Dict[str, float], accelerator: str = "") -> BenchmarkResult:
    return BenchmarkResult(
        ordered_stats=list(STATS),
        stat_values=dict(stats),
        running=False,
        latency_ms=-1.0,
        accelerator=accelerator,
    )
