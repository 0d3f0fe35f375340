#!/usr/bin/env python3
"""Tests for inbound message parsing and the WebSocket transport.

The websocket is replaced by an in-memory fake; ``websockets.connect`` is
patched so no network access happens.

Run: python3 test_transport.py
"""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import websockets

sys.path.insert(0, str(Path(__file__).parent))

from session_events import EventKind, TransportError, parse_message
from transport import WebSocketTransport

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


class FakeWebSocket:
    """Replays scripted inbound frames; records outbound ones."""

    def __init__(self, inbound=(), fail_at_end=False, hang=False):
        self.inbound = [m if isinstance(m, str) else json.dumps(m) for m in inbound]
        self.fail_at_end = fail_at_end
        self.hang = hang
        self.sent = []
        self.closed = False

    async def recv(self):
        if self.hang:
            await asyncio.sleep(3600)
        if not self.inbound:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        return self.inbound.pop(0)

    async def send(self, data):
        if self.closed:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while self.inbound:
            yield self.inbound.pop(0)
        if self.fail_at_end:
            raise websockets.exceptions.ConnectionClosedError(None, None)


def patched_connect(ws):
    return patch("transport.websockets.connect", new=AsyncMock(return_value=ws))


async def collect(transport):
    return [event async for event in transport.events()]


# ══════════════════════════════════════════════════════════════════
# Test Group 1: parse_message
# ══════════════════════════════════════════════════════════════════

@test("Single-key messages map to one event")
def test_parse_single():
    [event] = parse_message({"audioPart": "AAAA"})
    assert event.kind == EventKind.AUDIO
    assert event.data == "AAAA"


@test("Multi-key message splits in a fixed order")
def test_parse_multi():
    events = parse_message({
        "turnComplete": True,
        "transcription": {"role": "model", "text": "ok"},
        "audioPart": "AAAA",
    })
    assert [e.kind for e in events] == [
        EventKind.AUDIO, EventKind.TRANSCRIPTION, EventKind.TURN_COMPLETE]


@test("False flags produce no event")
def test_parse_false_flags():
    assert parse_message({"interrupted": False, "turnComplete": False}) == []


@test("Unknown keys and non-objects become UNKNOWN")
def test_parse_unknown():
    [event] = parse_message({"usageMetadata": {"tokens": 3}})
    assert event.kind == EventKind.UNKNOWN
    [event] = parse_message(["not", "a", "dict"])
    assert event.kind == EventKind.UNKNOWN


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Handshake
# ══════════════════════════════════════════════════════════════════

@test("open() sends setup and waits for setupComplete")
async def test_open_handshake():
    ws = FakeWebSocket([{"setupComplete": {}}])
    with patched_connect(ws) as connect:
        transport = await WebSocketTransport.open("wss://agent", {"model": "m"}, api_key="k")
    assert ws.sent == [{"setup": {"model": "m"}}]
    kwargs = connect.call_args.kwargs
    assert kwargs["additional_headers"] == {"Authorization": "Bearer k"}
    assert not transport.closed


@test("Events arriving before setupComplete are replayed first")
async def test_early_events_replayed():
    ws = FakeWebSocket([
        {"transcription": {"role": "user", "text": "hi"}},
        {"setupComplete": {}},
        {"turnComplete": True},
    ])
    with patched_connect(ws):
        transport = await WebSocketTransport.open("wss://agent", {})
    events = await collect(transport)
    assert [e.kind for e in events] == [EventKind.TRANSCRIPTION, EventKind.TURN_COMPLETE]


@test("Error during setup raises TransportError and closes the socket")
async def test_setup_rejected():
    ws = FakeWebSocket([{"error": {"message": "bad model"}}])
    with patched_connect(ws):
        try:
            await WebSocketTransport.open("wss://agent", {})
        except TransportError as e:
            assert "setup rejected" in str(e)
        else:
            raise AssertionError("Expected TransportError")
    assert ws.closed


@test("Silent server times out the handshake")
async def test_setup_timeout():
    ws = FakeWebSocket(hang=True)
    with patched_connect(ws):
        try:
            await WebSocketTransport.open("wss://agent", {}, handshake_timeout=0.05)
        except TransportError as e:
            assert "timed out" in str(e)
        else:
            raise AssertionError("Expected TransportError")
    assert ws.closed


@test("Connection refused becomes TransportError")
async def test_connect_refused():
    with patch("transport.websockets.connect",
               new=AsyncMock(side_effect=OSError("connection refused"))):
        try:
            await WebSocketTransport.open("wss://agent", {})
        except TransportError:
            return
    raise AssertionError("Expected TransportError")


# ══════════════════════════════════════════════════════════════════
# Test Group 3: Streaming
# ══════════════════════════════════════════════════════════════════

@test("Clean close ends the event stream without raising")
async def test_clean_close():
    transport = WebSocketTransport(FakeWebSocket([{"audioPart": "AAAA"}, "garbage"]))
    events = await collect(transport)
    assert [e.kind for e in events] == [EventKind.AUDIO, EventKind.UNKNOWN]


@test("Abnormal close raises TransportError")
async def test_abnormal_close():
    transport = WebSocketTransport(FakeWebSocket([{"audioPart": "AAAA"}], fail_at_end=True))
    seen = []
    try:
        async for event in transport.events():
            seen.append(event)
    except TransportError:
        assert len(seen) == 1
        return
    raise AssertionError("Expected TransportError")


@test("send() after close raises; send_nowait() is silently ignored")
async def test_send_after_close():
    ws = FakeWebSocket()
    transport = WebSocketTransport(ws)
    transport.send_nowait({"realtimeAudio": "AAAA"})
    await asyncio.sleep(0)
    assert ws.sent == [{"realtimeAudio": "AAAA"}]

    await transport.close()
    transport.send_nowait({"realtimeAudio": "BBBB"})
    try:
        await transport.send({"clientText": {"text": "hi"}})
    except TransportError:
        pass
    else:
        raise AssertionError("Expected TransportError")
    assert len(ws.sent) == 1


if __name__ == "__main__":
    print("=" * 60)
    print("Transport Tests")
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
