from prometheus_client import REGISTRY, generate_latest

from edgechat.observability import metrics


def _value(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_observe_benchmark_feeds_histograms():
    labels = {"model": "metrics-model", "accelerator": "GPU"}
    before = _value("edgechat_turn_latency_seconds_count", labels)

    metrics.observe_benchmark(
        "metrics-model",
        "GPU",
        {"time_to_first_token": 0.2, "prefill_speed": 300.0, "decode_speed": 25.0, "latency": 1.5},
    )

    assert _value("edgechat_turn_latency_seconds_count", labels) == before + 1
    assert _value("edgechat_turn_latency_seconds_sum", labels) >= 1.5
    body = generate_latest(REGISTRY).decode("utf-8")
    assert "# TYPE edgechat_decode_tokens_per_second histogram" in body


def test_outcome_and_reset_counters():
    before_turns = _value("edgechat_turns_total", {"model": "metrics-model", "state": "cancelled"})
    before_resets = _value("edgechat_session_reset_attempts_total", {"model": "metrics-model", "outcome": "error"})

    metrics.count_turn("metrics-model", "cancelled")
    metrics.count_reset_attempt("metrics-model", ok=False)

    assert _value("edgechat_turns_total", {"model": "metrics-model", "state": "cancelled"}) == before_turns + 1
    assert (
        _value("edgechat_session_reset_attempts_total", {"model": "metrics-model", "outcome": "error"})
        == before_resets + 1
    )
