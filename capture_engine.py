"""Microphone capture with echo gating.

The mic stays open for the whole session; MicGate decides per frame whether
the frame is forwarded. Gated frames are dropped, not queued.
"""

import logging
import time
from typing import Callable

from audio_codec import encode_frame
from session_config import SPEECH_COOLDOWN

logger = logging.getLogger(__name__)


class MicGate:
    """Is-speaking flag, post-speech cooldown, and external-audio flag.

    All fields are written from the event loop thread only, inside the
    callback that observes the triggering event, so the next capture frame
    always sees the current value.
    """

    def __init__(self, cooldown: float = SPEECH_COOLDOWN, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self.is_speaking = False
        self.cooldown_until = 0.0
        self.other_audio_playing = False

    def speech_started(self):
        self.is_speaking = True

    def speech_ended(self):
        """Playback drained naturally: close the gate for the cooldown window."""
        self.is_speaking = False
        self.cooldown_until = self._clock() + self.cooldown

    def speech_cut(self):
        """Playback abandoned by barge-in.

        The flushed tail may still be ringing in the room, so the cut starts
        the same cooldown as a natural end.
        """
        self.is_speaking = False
        self.cooldown_until = self._clock() + self.cooldown

    def reset(self):
        """Clear speaking and cooldown. The external-audio flag belongs to the host."""
        self.is_speaking = False
        self.cooldown_until = 0.0

    def is_open(self) -> bool:
        if self.other_audio_playing or self.is_speaking:
            return False
        return self._clock() >= self.cooldown_until


class CaptureEngine:
    """Gate, encode, and forward fixed-size capture frames.

    Args:
        gate: MicGate consulted for every frame
        sink: callable taking the outbound message dict; must not block
    """

    def __init__(self, gate: MicGate, sink: Callable[[dict], None]):
        self.gate = gate
        self._sink = sink
        self.running = False
        self.frames_sent = 0
        self.frames_dropped = 0

    def start(self):
        self.running = True
        self.frames_sent = 0
        self.frames_dropped = 0

    def stop(self):
        if self.running:
            logger.info("Capture stopped (sent %d, dropped %d)",
                        self.frames_sent, self.frames_dropped)
        self.running = False

    def on_frame(self, samples) -> bool:
        """Handle one capture callback. Returns True if the frame was sent."""
        if not self.running:
            return False
        if not self.gate.is_open():
            self.frames_dropped += 1
            return False

        self._sink({"realtimeAudio": encode_frame(samples)})
        self.frames_sent += 1
        if self.frames_sent % 100 == 0:
            logger.debug("Sent %d audio frames", self.frames_sent)
        return True
