"""PCM encode/decode and base64 transport framing.

Float samples in [-1, 1] are carried as 16-bit signed little-endian PCM,
base64-encoded for the JSON envelope. Stateless.
"""

import base64
import binascii

import numpy as np

from session_events import AudioDecodeError

_PCM_DTYPE = np.dtype("<i2")
_INT16_MAX = 32767
_INT16_SCALE = 32768.0


def float_to_pcm16(samples) -> bytes:
    """Convert float samples to 16-bit LE PCM bytes, clipping to [-1, 1]."""
    arr = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    # Asymmetric scale so +1.0 maps to 32767 and -1.0 to -32768
    scaled = np.where(arr < 0, arr * _INT16_SCALE, arr * _INT16_MAX)
    return np.round(scaled).astype(_PCM_DTYPE).tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Convert 16-bit LE PCM bytes to float32 samples."""
    if len(data) % _PCM_DTYPE.itemsize:
        raise AudioDecodeError(f"PCM payload has odd length {len(data)}")
    return np.frombuffer(data, dtype=_PCM_DTYPE).astype(np.float32) / _INT16_SCALE


def encode_frame(samples) -> str:
    """Float samples -> base64 PCM string for the ``realtimeAudio`` envelope."""
    return base64.b64encode(float_to_pcm16(samples)).decode("ascii")


def decode_part(payload: str) -> np.ndarray:
    """Base64 PCM string from an ``audioPart`` event -> float32 samples.

    Raises:
        AudioDecodeError: payload is not valid base64 or not whole samples.
    """
    if not isinstance(payload, str) or not payload:
        raise AudioDecodeError("empty audio payload")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"invalid base64: {e}") from e
    return pcm16_to_float(data)


def duration_of(samples, sample_rate: int) -> float:
    return len(samples) / float(sample_rate)
