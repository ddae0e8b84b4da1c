from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

_logger = logging.getLogger("edgechat.telemetry")
_metric_logger = logging.getLogger("edgechat.metrics")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    model: str | None = None


# Rolling buffer of recent events for diagnostics (best-effort only)
_RECENT_EVENTS: List[TelemetryEvent] = []
_MAX_BUFFER = 200
_BUFFER_LOCK = Lock()


def record_event(event: TelemetryEvent) -> None:
    """Log a lifecycle event and keep it in the in-memory buffer."""

    with _BUFFER_LOCK:
        _RECENT_EVENTS.append(event)
        if len(_RECENT_EVENTS) > _MAX_BUFFER:
            del _RECENT_EVENTS[0 : len(_RECENT_EVENTS) - _MAX_BUFFER]

    _logger.info(
        "telemetry_event",
        extra={
            "telemetry_name": event.name,
            "telemetry_model": event.model,
            "telemetry_properties": event.properties,
        },
    )


def list_recent_events(limit: int = 50, name: Optional[str] = None) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    with _BUFFER_LOCK:
        events = [e for e in _RECENT_EVENTS if name is None or e.name == name]
    return events[-limit:]


def record_metric(
    *,
    name: str,
    value: float,
    properties: Optional[Mapping[str, Any]] = None,
    metric_type: str = "gauge",
) -> None:
    """Emit a telemetry metric.

    Parameters
    ----------
    name: str
        Metric identifier (snake_case, e.g. ``decode_speed``).
    value: float
        Numeric value.
    properties: Mapping[str, Any] | None
        Dimensions such as model name and accelerator.
    metric_type: str
        "gauge" (default) or "counter".
    """

    payload = {
        "metric_name": name,
        "metric_value": value,
        "metric_properties": dict(properties or {}),
        "metric_type": metric_type,
    }
    _metric_logger.info("metric_event", extra=payload)
