from __future__ import annotations

import threading
import time

from edgechat.config import TurnSettings
from edgechat.domain.errors import GenerationError, ResetError
from edgechat.domain.transcript_models import TextEntry, WarningEntry
from edgechat.domain.turn_models import SessionState, TurnState
from edgechat.infrastructure import events
from tests.utils import RecordingPublisher, RecordingSleep, ScriptedEngine, build_orchestrator, wait_until


def test_reset_retries_until_the_session_comes_back(store, settings):
    engine = ScriptedEngine(reset_failures=3)
    sleep = RecordingSleep()
    orch = build_orchestrator(engine, store, settings, sleep=sleep)

    reset = orch.reset_session("gemma")
    assert reset.wait(2)

    assert reset.succeeded
    assert reset.attempts == 4
    assert engine.reset_attempts == 4
    assert sleep.calls == [0.2, 0.2, 0.2]
    assert orch.status("gemma").session_state is SessionState.ACTIVE
    assert engine.overlaps == 0


def test_reset_clears_transcript_and_stops_generation(store, settings):
    engine = ScriptedEngine(auto=False)
    orch = build_orchestrator(engine, store, settings)
    store.append("gemma", TextEntry(content="earlier", side="user"))

    run = orch.generate("gemma", "hi")
    assert engine.started.wait(2)
    engine.emit("gemma", "partial")

    reset = orch.reset_session("gemma")
    assert reset.wait(2)

    assert run.state is TurnState.CANCELLED
    assert store.list_entries("gemma") == []
    assert engine.overlaps == 0
    status = orch.status("gemma")
    assert not status.in_progress and not status.resetting


def test_reset_keeps_cleanup_listener_on_new_session(store, settings):
    engine = ScriptedEngine()
    orch = build_orchestrator(engine, store, settings)
    assert orch.generate("gemma", "hi").wait(2)
    before = orch.models.runtime("gemma").handle

    assert orch.reset_session("gemma").wait(2)

    after = orch.models.runtime("gemma").handle
    assert after is not before
    assert after.session != before.session
    assert after.on_cleanup is before.on_cleanup
    assert before.state is SessionState.DESTROYED


def test_turn_waits_for_outstanding_reset(store, settings):
    gate = threading.Event()
    engine = ScriptedEngine(reset_gate=gate)
    orch = build_orchestrator(engine, store, settings)

    reset = orch.reset_session("gemma")
    assert wait_until(lambda: engine.reset_attempts == 1)
    run = orch.generate("gemma", "hi")
    time.sleep(0.05)
    assert run.state is TurnState.PREPARING
    assert not any(name == "generate" for name, _ in engine.calls)

    gate.set()
    assert reset.wait(2)
    assert run.wait(2)
    assert run.state is TurnState.COMPLETED
    assert engine.overlaps == 0


def test_reset_without_engine_has_nothing_to_do(store, settings):
    engine = ScriptedEngine()
    orch = build_orchestrator(engine, store, settings, initialize=False)

    reset = orch.reset_session("gemma")
    assert reset.wait(2)

    assert reset.succeeded
    assert reset.attempts == 0
    assert engine.reset_attempts == 0


def test_reset_gives_up_when_attempt_cap_reached(store):
    engine = ScriptedEngine(reset_failures=10)
    capped = TurnSettings(ready_poll_seconds=0.01, warmup_seconds=0.0, reset_backoff_seconds=0.0, reset_max_attempts=2)
    orch = build_orchestrator(engine, store, capped, sleep=RecordingSleep())
    outcomes = []

    reset = orch.reset_session("gemma", on_done=outcomes.append)
    assert reset.wait(2)
    assert wait_until(lambda: outcomes)

    assert isinstance(reset.error, ResetError)
    assert reset.error.attempts == 2
    assert outcomes == [reset.error]
    assert orch.status("gemma").session_state is SessionState.DESTROYED
    entries = store.list_entries("gemma")
    assert len(entries) == 1 and isinstance(entries[0], WarningEntry)

    run = orch.generate("gemma", "hi")
    assert run.wait(2)
    assert run.state is TurnState.FAILED
    assert isinstance(run.error, GenerationError)


def test_reset_outcomes_are_published_with_session_state(store, monkeypatch):
    publisher = RecordingPublisher()
    monkeypatch.setattr(events, "_publisher", publisher)
    engine = ScriptedEngine(reset_failures=3)
    capped = TurnSettings(ready_poll_seconds=0.01, warmup_seconds=0.0, reset_backoff_seconds=0.0, reset_max_attempts=2)
    orch = build_orchestrator(engine, store, capped, models=("a", "b"), sleep=RecordingSleep())

    assert orch.reset_session("a").wait(2)
    engine.reset_failures = 0
    assert orch.reset_session("b").wait(2)

    assert wait_until(lambda: len(publisher.events) == 2)
    failed, ok = publisher.of("a")[0], publisher.of("b")[0]
    assert (failed.state, failed.attempts) == (SessionState.DESTROYED, 2)
    assert failed.error == "Failed to reset session after 2 attempts."
    assert (ok.state, ok.attempts, ok.error) == (SessionState.ACTIVE, 1, None)
    assert ok.channel == "edgechat.events.session.reset"
