#!/usr/bin/env python3
"""Tests for transcript assembly and the interruption handler.

Run: python3 test_transcript_aggregator.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent))

from capture_engine import MicGate
from interruption import InterruptionHandler
from transcript_aggregator import TranscriptAggregator, TranscriptMessage

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} — {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} — {type(e).__name__}: {e}")


def make_aggregator():
    messages = []
    return TranscriptAggregator(sink=messages.append), messages


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Flushing
# ══════════════════════════════════════════════════════════════════

@test("Model deltas 'Hel' + 'lo' flush as one 'Hello' message")
def test_hello():
    agg, messages = make_aggregator()
    agg.on_delta("model", "Hel")
    agg.on_delta("model", "lo")
    agg.on_turn_complete()
    assert len(messages) == 1
    msg = messages[0]
    assert isinstance(msg, TranscriptMessage)
    assert msg.role == "model"
    assert msg.text == "Hello"
    assert msg.id and msg.timestamp > 0


@test("Both roles flush on turn complete, user first")
def test_both_roles():
    agg, messages = make_aggregator()
    agg.on_delta("model", "Sure thing.")
    agg.on_delta("user", "Play some jazz")
    agg.on_turn_complete()
    assert [(m.role, m.text) for m in messages] == [
        ("user", "Play some jazz"), ("model", "Sure thing."),
    ]
    assert messages[0].id != messages[1].id


@test("Second turn complete with no new deltas emits nothing")
def test_flush_idempotent():
    agg, messages = make_aggregator()
    agg.on_delta("user", "hi")
    agg.on_turn_complete()
    agg.on_turn_complete()
    assert len(messages) == 1


@test("Whitespace-only buffers produce no message")
def test_whitespace_only():
    agg, messages = make_aggregator()
    agg.on_delta("model", "  ")
    assert agg.on_turn_complete() == []
    assert messages == []


@test("Interrupted turn is discarded without emitting")
def test_interrupted_discards():
    agg, messages = make_aggregator()
    agg.on_delta("model", "Let me tell you about")
    agg.on_delta("user", "stop")
    agg.on_interrupted()
    agg.on_turn_complete()
    assert messages == []
    assert agg.pending("model") == ""


@test("Unknown role is rejected")
def test_unknown_role():
    agg, _ = make_aggregator()
    try:
        agg.on_delta("system", "x")
    except ValueError:
        return
    raise AssertionError("Expected ValueError")


# ══════════════════════════════════════════════════════════════════
# Test Group 2: InterruptionHandler
# ══════════════════════════════════════════════════════════════════

@test("Interruption flushes playback, drops transcripts and clears speaking")
def test_interruption_handler():
    scheduler = MagicMock()
    scheduler.clock = 0.3
    agg, messages = make_aggregator()
    gate = MicGate(cooldown=0.7, clock=lambda: 5.0)
    gate.speech_started()
    agg.on_delta("model", "half a sent")

    handler = InterruptionHandler(scheduler, agg, gate)
    handler.on_interrupted()

    scheduler.flush.assert_called_once()
    assert gate.is_speaking is False
    assert not gate.is_open(), "Cut must start the cooldown"
    assert abs(gate.cooldown_until - 5.7) < 1e-9
    agg.on_turn_complete()
    assert messages == []
    assert handler.count == 1


if __name__ == "__main__":
    print("=" * 60)
    print("Transcript Aggregator Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
