"""PyAudio microphone and speaker for the voice session.

Both streams run in callback mode on PortAudio threads. Anything that
touches session state is handed to the event loop with
``call_soon_threadsafe``; the audio threads only read their own buffers.
"""

import logging
from threading import Lock

import numpy as np

from session_config import CHANNELS, AudioConfig
from session_events import DeviceError

logger = logging.getLogger(__name__)

OUTPUT_FRAMES_PER_BUFFER = 1024


def _post(loop, callback, *args):
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        # Loop already closed during teardown
        pass


class PyAudioOutput:
    """Timeline-based output mixer.

    ``current_time()`` is the number of rendered frames divided by the sample
    rate, so buffers scheduled at a time land on an exact sample offset.
    Rendered audio is fed to the analysis tap before it reaches the device.
    """

    def __init__(self, pa, sample_rate: int, tap, loop):
        self._pa = pa
        self._rate = sample_rate
        self._tap = tap
        self._loop = loop
        self._stream = None
        self._lock = Lock()
        self._frames_rendered = 0
        self._scheduled = []  # [(PlaybackBuffer, start_frame)]
        self.on_buffer_ended = lambda buffer: None

    def open(self):
        import pyaudio

        try:
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self._rate,
                output=True,
                frames_per_buffer=OUTPUT_FRAMES_PER_BUFFER,
                stream_callback=self._callback,
            )
        except OSError as e:
            raise DeviceError(f"cannot open speaker: {e}") from e
        logger.info("Playback device opened at %d Hz", self._rate)

    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self._rate

    def schedule(self, buffer):
        start_frame = int(round(buffer.scheduled_start * self._rate))
        with self._lock:
            # The audio thread may have rendered past the start since it was read
            start_frame = max(start_frame, self._frames_rendered)
            self._scheduled.append((buffer, start_frame))

    def stop(self, buffer):
        with self._lock:
            self._scheduled = [(b, s) for b, s in self._scheduled if b is not buffer]

    def _render(self, frame_count: int):
        out = np.zeros(frame_count, dtype=np.float32)
        ended = []
        with self._lock:
            start = self._frames_rendered
            end = start + frame_count
            remaining = []
            for buffer, s in self._scheduled:
                e = s + len(buffer.samples)
                lo, hi = max(s, start), min(e, end)
                if hi > lo:
                    out[lo - start:hi - start] += buffer.samples[lo - s:hi - s]
                if e <= end:
                    ended.append(buffer)
                else:
                    remaining.append((buffer, s))
            self._scheduled = remaining
            self._frames_rendered = end
        np.clip(out, -1.0, 1.0, out=out)
        return out, ended

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        out, ended = self._render(frame_count)
        self._tap.feed(out)
        for buffer in ended:
            _post(self._loop, self.on_buffer_ended, buffer)
        return (out.tobytes(), pyaudio.paContinue)

    def close(self):
        with self._lock:
            self._scheduled.clear()
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.warning("Error closing speaker: %s", e)
            self._stream = None


class PyAudioMicrophone:
    """Fixed-size float32 capture frames delivered to ``on_frame`` on the loop."""

    def __init__(self, pa, sample_rate: int, frame_size: int, loop, on_frame):
        self._pa = pa
        self._rate = sample_rate
        self._frame_size = frame_size
        self._loop = loop
        self._on_frame = on_frame
        self._stream = None

    def open(self):
        import pyaudio

        try:
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self._rate,
                input=True,
                frames_per_buffer=self._frame_size,
                stream_callback=self._callback,
                start=False,
            )
        except OSError as e:
            raise DeviceError(f"cannot open microphone: {e}") from e
        logger.info("Microphone opened at %d Hz, %d-sample frames", self._rate, self._frame_size)

    def start(self):
        if self._stream is not None:
            self._stream.start_stream()

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        samples = np.frombuffer(in_data, dtype=np.float32).copy()
        _post(self._loop, self._on_frame, samples)
        return (None, pyaudio.paContinue)

    def close(self):
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.warning("Error closing microphone: %s", e)
            self._stream = None


class AudioDevices:
    """Owns the PyAudio instance and opens the session's two streams."""

    def __init__(self, audio: AudioConfig):
        self._audio = audio
        self._pa = None

    def _instance(self):
        if self._pa is None:
            import pyaudio

            try:
                self._pa = pyaudio.PyAudio()
            except OSError as e:
                raise DeviceError(f"audio system unavailable: {e}") from e
        return self._pa

    def open_output(self, loop, tap) -> PyAudioOutput:
        output = PyAudioOutput(self._instance(), self._audio.output_rate, tap, loop)
        output.open()
        return output

    def open_microphone(self, loop, on_frame) -> PyAudioMicrophone:
        mic = PyAudioMicrophone(self._instance(), self._audio.input_rate,
                                self._audio.frame_size, loop, on_frame)
        mic.open()
        return mic

    def close(self):
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
