"""Barge-in handling: abandon the agent's in-flight turn."""

import logging

logger = logging.getLogger(__name__)


class InterruptionHandler:
    """Flushes playback and partial transcripts on the remote interrupt signal.

    All three steps run synchronously in the caller's callback so the next
    capture frame and the next scheduled buffer see the reset state.
    """

    def __init__(self, scheduler, transcripts, gate):
        self._scheduler = scheduler
        self._transcripts = transcripts
        self._gate = gate
        self.count = 0

    def on_interrupted(self):
        self._scheduler.flush()
        self._transcripts.on_interrupted()
        self._gate.speech_cut()
        self.count += 1
        logger.info("Barge-in: playback flushed at t=%.3f", self._scheduler.clock)
