"""
G.711 mu-law codec and 20ms framing for Twilio Media Streams audio.

Twilio and the OpenAI Realtime session both speak 8kHz mono mu-law, so the
relay itself forwards payloads untouched. Conversion is only needed where real
audio devices are involved (the local simulator): 16-bit little-endian PCM in,
mu-law frames out, and the reverse for playback.

Both directions are fixed, sample-independent transforms and hold no state.
"""

from typing import List

import numpy as np

from src.relay.errors import LengthError

SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
ULAW_FRAME_SIZE = int(SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
PCM_FRAME_SIZE = ULAW_FRAME_SIZE * 2  # 320 bytes for 20ms
ULAW_SILENCE = 0xFF

INT16_MIN = -32768
INT16_MAX = 32767

_BIAS = 0x84
_CLIP = 32635


def _clamp16(value: int) -> int:
    if value > INT16_MAX:
        return INT16_MAX
    if value < INT16_MIN:
        return INT16_MIN
    return value


def linear_to_ulaw(sample: int) -> int:
    """
    Compress one signed 16-bit linear sample to a mu-law byte.

    Args:
        sample: Linear sample; values outside int16 are clamped

    Returns:
        Mu-law byte (0-255)
    """
    sample = _clamp16(int(sample))

    sign = 0x80 if sample < 0 else 0
    if sign:
        sample = -sample
    if sample > _CLIP:
        sample = _CLIP
    sample += _BIAS

    # Highest set bit among bits 14..7 gives the segment.
    exponent = 7
    mask = 0x4000
    while exponent > 0 and not sample & mask:
        exponent -= 1
        mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def ulaw_to_linear(ulaw_byte: int) -> int:
    """
    Expand one mu-law byte to a signed 16-bit linear sample.

    Args:
        ulaw_byte: Mu-law byte (0-255)

    Returns:
        Linear sample in int16 range
    """
    ulaw_byte = ~ulaw_byte & 0xFF
    sign = ulaw_byte & 0x80
    exponent = (ulaw_byte >> 4) & 0x07
    mantissa = ulaw_byte & 0x0F

    sample = (((mantissa << 3) + _BIAS) << exponent) - _BIAS
    return -sample if sign else sample


# Decoding has only 256 possible inputs.
_ULAW_TO_LINEAR = np.array([ulaw_to_linear(b) for b in range(256)], dtype=np.int16)


def _compress(samples: np.ndarray) -> np.ndarray:
    """Vectorized linear_to_ulaw over an int16 array."""
    x = samples.astype(np.int32)
    sign = np.where(x < 0, 0x80, 0)
    x = np.minimum(np.abs(x), _CLIP) + _BIAS

    exponent = np.zeros_like(x)
    for exp in range(1, 8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F
    return (np.bitwise_not(sign | (exponent << 4) | mantissa) & 0xFF).astype(np.uint8)


def encode_frame(pcm_bytes: bytes) -> bytes:
    """
    Convert 16-bit little-endian PCM to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes (320 bytes for one 20ms frame)

    Returns:
        Mu-law bytes, half the input length

    Raises:
        LengthError: If the input is empty or has an odd length
    """
    if not pcm_bytes or len(pcm_bytes) % 2:
        raise LengthError(
            f"PCM input must be a positive even number of bytes, got {len(pcm_bytes)}"
        )

    samples = np.frombuffer(pcm_bytes, dtype="<i2")
    return _compress(samples).tobytes()


def decode_frame(ulaw_bytes: bytes, gain: float = 1.0) -> bytes:
    """
    Convert mu-law to 16-bit little-endian PCM.

    Args:
        ulaw_bytes: Mu-law encoded bytes
        gain: Playback gain applied after decoding, saturating at int16 limits

    Returns:
        Linear PCM 16-bit bytes, twice the input length
    """
    if not ulaw_bytes:
        return b""

    samples = _ULAW_TO_LINEAR[np.frombuffer(ulaw_bytes, dtype=np.uint8)]
    if gain != 1.0:
        scaled = np.round(samples.astype(np.float64) * gain)
        samples = np.clip(scaled, INT16_MIN, INT16_MAX)

    return samples.astype("<i2").tobytes()


class FrameBuffer:
    """
    Accumulates raw PCM and hands out complete fixed-size frames.

    Owned by exactly one producer; partial input is kept until the next push.
    """

    def __init__(self, frame_size: int = PCM_FRAME_SIZE):
        if frame_size <= 0:
            raise ValueError("frame_size must be positive")
        self.frame_size = frame_size
        self._stash = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of a full frame."""
        return len(self._stash)

    def push(self, data: bytes) -> List[bytes]:
        """Append data and return every complete frame now available."""
        self._stash.extend(data)
        frames = []
        while len(self._stash) >= self.frame_size:
            frames.append(bytes(self._stash[:self.frame_size]))
            del self._stash[:self.frame_size]
        return frames

    def clear(self) -> None:
        self._stash.clear()


def create_silence_ulaw(duration_ms: int) -> bytes:
    """
    Create silence in mu-law format.

    Args:
        duration_ms: Duration of silence in milliseconds

    Returns:
        Mu-law silence bytes
    """
    num_samples = int(SAMPLE_RATE * duration_ms / 1000)
    return bytes([ULAW_SILENCE]) * num_samples


def tone_pcm(frequency_hz: float, duration_ms: int, amplitude: int = 9000) -> bytes:
    """Generate a sine tone as 16-bit PCM at 8kHz."""
    num_samples = int(SAMPLE_RATE * duration_ms / 1000)
    t = np.arange(num_samples) / SAMPLE_RATE
    samples = np.round(np.sin(2 * np.pi * frequency_hz * t) * amplitude)
    return np.clip(samples, INT16_MIN, INT16_MAX).astype("<i2").tobytes()
