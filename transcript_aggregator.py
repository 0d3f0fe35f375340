"""Transcript assembly from streamed per-role deltas.

Provides:
- TranscriptMessage: frozen dataclass for one finalized utterance
- TranscriptAggregator: per-role accumulators flushed on turn boundaries

Interrupted turns are discarded, never emitted.
"""

import time
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Callable

ROLES = ("user", "model")


@dataclass(frozen=True)
class TranscriptMessage:
    """A complete utterance from one role."""
    id: str
    role: str  # "user" or "model"
    text: str
    timestamp: float  # time.time() at flush


class TranscriptAggregator:
    """Accumulates text deltas per role until turn-complete.

    Args:
        sink: called with each TranscriptMessage produced by a flush
    """

    def __init__(self, sink: Callable[[TranscriptMessage], None] | None = None):
        self._sink = sink or (lambda msg: None)
        self._buffers = {role: [] for role in ROLES}
        self._lock = Lock()

    def on_delta(self, role: str, text: str):
        """Append a fragment to the role's current utterance."""
        if role not in self._buffers:
            raise ValueError(f"Unknown transcript role: {role!r}")
        if not text:
            return
        with self._lock:
            self._buffers[role].append(text)

    def pending(self, role: str) -> str:
        with self._lock:
            return "".join(self._buffers[role])

    def on_turn_complete(self) -> list[TranscriptMessage]:
        """Flush both roles; empty buffers produce nothing."""
        messages = []
        with self._lock:
            for role in ROLES:
                text = "".join(self._buffers[role])
                self._buffers[role].clear()
                if not text.strip():
                    continue
                messages.append(TranscriptMessage(
                    id=uuid.uuid4().hex,
                    role=role,
                    text=text,
                    timestamp=time.time(),
                ))
        for msg in messages:
            self._sink(msg)
        return messages

    def on_interrupted(self):
        """Drop both partial utterances without emitting."""
        with self._lock:
            for parts in self._buffers.values():
                parts.clear()
