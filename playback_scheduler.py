"""Gapless playback scheduling on a monotonic output timeline.

PlaybackScheduler assigns each decoded buffer a start time on the output
device's clock so consecutive buffers play back-to-back. AnalysisTap is the
read-only view of what the output device actually rendered.
"""

import itertools
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

import numpy as np

from audio_codec import decode_part, duration_of
from session_config import FFT_SIZE

logger = logging.getLogger(__name__)

_buffer_ids = itertools.count(1)


@dataclass(eq=False)
class PlaybackBuffer:
    """One decoded audio segment from the remote turn."""
    samples: np.ndarray = field(repr=False)
    sample_rate: int
    scheduled_start: Optional[float] = None
    id: int = field(default_factory=lambda: next(_buffer_ids))

    @property
    def duration(self) -> float:
        return duration_of(self.samples, self.sample_rate)

    @property
    def scheduled_end(self) -> Optional[float]:
        if self.scheduled_start is None:
            return None
        return self.scheduled_start + self.duration

    @classmethod
    def from_part(cls, payload: str, sample_rate: int) -> "PlaybackBuffer":
        """Decode an ``audioPart`` payload. Raises AudioDecodeError."""
        return cls(samples=decode_part(payload), sample_rate=sample_rate)


class PlaybackScheduler:
    """Schedules buffers back-to-back and tracks the active set.

    The output device must provide ``current_time()``, ``schedule(buffer)``
    and ``stop(buffer)``, and must call ``on_buffer_ended(buffer)`` on the
    event loop when a scheduled buffer finishes on its own.

    Args:
        output: output device (see audio_devices.PyAudioOutput)
        on_speech_start: called when the active set goes from empty to non-empty
        on_speech_end: called when the active set drains naturally
    """

    def __init__(self, output, on_speech_start: Callable[[], None] | None = None,
                 on_speech_end: Callable[[], None] | None = None):
        self._output = output
        self._on_speech_start = on_speech_start or (lambda: None)
        self._on_speech_end = on_speech_end or (lambda: None)
        self.clock = 0.0
        self._active: list[PlaybackBuffer] = []

    @property
    def active(self) -> list[PlaybackBuffer]:
        return list(self._active)

    @property
    def is_speaking(self) -> bool:
        return bool(self._active)

    def now(self) -> float:
        return self._output.current_time()

    def reset_clock(self):
        self.clock = self.now()

    def on_buffer_received(self, buffer: PlaybackBuffer) -> PlaybackBuffer:
        """Schedule a buffer at max(now, clock) and advance the clock."""
        start = max(self.now(), self.clock)
        buffer.scheduled_start = start
        self._output.schedule(buffer)
        self.clock = start + buffer.duration

        was_idle = not self._active
        self._active.append(buffer)
        if was_idle:
            self._on_speech_start()
        return buffer

    def on_buffer_ended(self, buffer: PlaybackBuffer):
        """Natural completion. Stopped or flushed buffers are ignored."""
        try:
            self._active.remove(buffer)
        except ValueError:
            return
        if not self._active:
            self._on_speech_end()

    def flush(self):
        """Stop everything immediately and pull the clock back to now."""
        for buffer in self._active:
            self._output.stop(buffer)
        dropped = len(self._active)
        self._active.clear()
        self.clock = self.now()
        if dropped:
            logger.debug("Flushed %d playback buffers at t=%.3f", dropped, self.clock)


class AnalysisTap:
    """Read-only analyser over the most recently rendered output samples.

    The output device calls ``feed()`` from its audio thread with exactly the
    samples it sends to the speaker; readers only observe.
    """

    def __init__(self, fft_size: int = FFT_SIZE, smoothing: float = 0.1,
                 min_decibels: float = -100.0, max_decibels: float = -30.0):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._window = np.blackman(fft_size).astype(np.float32)
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float32)
        self._lock = Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def feed(self, samples):
        samples = np.asarray(samples, dtype=np.float32)
        with self._lock:
            if len(samples) >= self.fft_size:
                self._samples = samples[-self.fft_size:].copy()
            else:
                self._samples = np.concatenate((self._samples[len(samples):], samples))

    def reset(self):
        with self._lock:
            self._samples = np.zeros(self.fft_size, dtype=np.float32)
            self._smoothed = np.zeros(self.fft_size // 2, dtype=np.float32)

    def time_domain_data(self) -> np.ndarray:
        with self._lock:
            return self._samples.copy()

    def byte_frequency_data(self) -> np.ndarray:
        """Smoothed magnitude spectrum scaled to 0..255 between the dB bounds."""
        with self._lock:
            spectrum = np.abs(np.fft.rfft(self._samples * self._window))[:self.fft_size // 2]
            magnitude = spectrum / self.fft_size
            self._smoothed = self.smoothing * self._smoothed + (1 - self.smoothing) * magnitude
            smoothed = self._smoothed.copy()

        with np.errstate(divide="ignore"):
            db = 20 * np.log10(smoothed)
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = np.clip((db - self.min_decibels) * scale, 0, 255)
        return np.nan_to_num(scaled, nan=0.0).astype(np.uint8)

    def volume(self) -> float:
        """Mean byte frequency normalized so 128 maps to full scale."""
        data = self.byte_frequency_data()
        return min(1.0, float(data.mean()) / 128.0)
