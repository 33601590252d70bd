from __future__ import annotations

import logging
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Union

import numpy as np

from .models import ChannelId

logger = logging.getLogger(__name__)

MIN_SAMPLE_RATE = 8_000
MAX_SAMPLE_RATE = 192_000


class LoadError(RuntimeError):
    """Raised when an audio file cannot be materialized into a SampleBuffer."""


class SampleBuffer:
    """
    Immutable, normalized audio samples for every channel of a loaded file.

    Each channel is a read-only float32 NumPy array in [-1.0, 1.0]. Mono
    sources map both logical channels onto the *same* array object, so channel
    selection code stays uniform without doubling memory. Consumers never copy
    the samples: they hold a reference to the buffer and describe slices with
    `BufferView` windows.
    """

    def __init__(self, channels: Mapping[ChannelId, np.ndarray], sample_rate: int, channel_count: int) -> None:
        if channel_count not in (1, 2):
            raise ValueError("channel_count must be 1 or 2")
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if set(channels) != set(ChannelId):
            raise ValueError("channels must provide every ChannelId")

        frozen: Dict[ChannelId, np.ndarray] = {}
        seen: Dict[int, np.ndarray] = {}
        for channel_id, samples in channels.items():
            # Identical inputs stay identical after freezing (mono sharing).
            key = id(samples)
            if key not in seen:
                arr = np.ascontiguousarray(samples, dtype=np.float32)
                if arr.ndim != 1:
                    raise ValueError("channel samples must be 1D")
                if arr.flags.writeable:
                    arr = arr.view()
                    arr.setflags(write=False)
                seen[key] = arr
            frozen[channel_id] = seen[key]

        lengths = {arr.shape[0] for arr in frozen.values()}
        if len(lengths) != 1:
            raise ValueError("all channels must hold the same number of samples")

        self._channels = frozen
        self._sample_rate = int(sample_rate)
        self._channel_count = int(channel_count)
        self._length = lengths.pop()

    # ---- Construction ------------------------------------------------------

    @classmethod
    def from_array(cls, samples: np.ndarray, sample_rate: int) -> "SampleBuffer":
        """
        Build a buffer from samples shaped (frames,) for mono or (frames, 2)
        for interleaved stereo. Stereo is de-interleaved once, here.
        """
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            return cls({ChannelId.LEFT: data, ChannelId.RIGHT: data}, sample_rate, 1)
        if data.ndim == 2 and data.shape[1] == 1:
            mono = data[:, 0]
            return cls({ChannelId.LEFT: mono, ChannelId.RIGHT: mono}, sample_rate, 1)
        if data.ndim == 2 and data.shape[1] == 2:
            left = np.ascontiguousarray(data[:, 0])
            right = np.ascontiguousarray(data[:, 1])
            return cls({ChannelId.LEFT: left, ChannelId.RIGHT: right}, sample_rate, 2)
        raise ValueError(f"unsupported sample array shape {data.shape}")

    # ---- Accessors ---------------------------------------------------------

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def channel_count(self) -> int:
        return self._channel_count

    @property
    def total_sample_count(self) -> int:
        return self._length

    def __len__(self) -> int:
        return self._length

    @property
    def duration_seconds(self) -> float:
        return self._length / float(self._sample_rate)

    def channel(self, channel: ChannelId) -> np.ndarray:
        """Return the read-only backing array of `channel` (no copy)."""
        return self._channels[ChannelId(channel)]

    def view(self, channel: ChannelId, offset: int, length: int) -> "BufferView":
        """
        Return a bounds-clamped window into `channel`.

        Never raises for out-of-range requests: an offset past the end yields
        an empty view, a length running past the end is shortened.
        """
        offset = max(0, int(offset))
        length = max(0, int(length))
        if offset >= self._length:
            return BufferView(self, ChannelId(channel), self._length, 0)
        length = min(length, self._length - offset)
        return BufferView(self, ChannelId(channel), offset, length)

    def view_to_end(self, channel: ChannelId, offset: int) -> "BufferView":
        return self.view(channel, offset, self._length)

    def __repr__(self) -> str:
        return (
            f"SampleBuffer(sample_rate={self._sample_rate}, channel_count={self._channel_count}, "
            f"total_sample_count={self._length})"
        )


@dataclass(frozen=True)
class BufferView:
    """Non-owning (offset, length) window into one channel of a SampleBuffer."""

    buffer: SampleBuffer
    channel: ChannelId
    offset: int
    length: int

    def __post_init__(self) -> None:
        if self.offset < 0 or self.length < 0:
            raise ValueError("offset and length must be non-negative")
        if self.offset + self.length > self.buffer.total_sample_count:
            raise ValueError("view exceeds buffer bounds")

    @property
    def samples(self) -> np.ndarray:
        """Read-only NumPy view of the window; shares memory with the buffer."""
        return self.buffer.channel(self.channel)[self.offset : self.offset + self.length]

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def sample_rate(self) -> int:
        return self.buffer.sample_rate

    def __len__(self) -> int:
        return self.length

    @property
    def is_empty(self) -> bool:
        return self.length == 0


# ----------------------------
# WAV loading
# ----------------------------

def _decode_pcm(raw_bytes: bytes, sample_width: int) -> np.ndarray:
    """
    Convert raw little-endian PCM bytes to float32 in [-1, 1].

    Handles 8-bit unsigned, 16-bit signed, 24-bit signed and 32-bit signed PCM.
    """
    if sample_width == 1:  # 8-bit unsigned
        data = np.frombuffer(raw_bytes, dtype=np.uint8)
        return (data.astype(np.float32) - 128.0) / 128.0
    if sample_width == 2:
        data = np.frombuffer(raw_bytes, dtype="<i2")
        return data.astype(np.float32) / 32768.0
    if sample_width == 3:
        raw = np.frombuffer(raw_bytes, dtype=np.uint8)
        n_samples = raw.size // 3
        triplets = raw[: n_samples * 3].reshape(n_samples, 3).astype(np.int32)
        # Little-endian: byte 0 is LSB, byte 2 is MSB
        values = triplets[:, 0] | (triplets[:, 1] << 8) | (triplets[:, 2] << 16)
        values = np.where(values & 0x800000, values - 0x1000000, values)
        return values.astype(np.float32) / 8388608.0  # 2^23
    if sample_width == 4:
        data = np.frombuffer(raw_bytes, dtype="<i4")
        return (data.astype(np.float64) / 2147483648.0).astype(np.float32)  # 2^31
    raise LoadError(f"Unsupported sample width: {sample_width * 8}-bit")


def load_sample_buffer(path: Union[str, Path]) -> SampleBuffer:
    """
    Materialize a PCM WAV file into a SampleBuffer.

    Raises:
        LoadError: the file is missing, malformed, or outside the supported
            channel count, sample width, or sample rate range, or holds no
            samples.
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"File not found: {path}")

    try:
        with wave.open(str(path), "rb") as wav:
            n_channels = wav.getnchannels()
            sample_rate = wav.getframerate()
            sample_width = wav.getsampwidth()
            n_frames = wav.getnframes()
            raw_bytes = wav.readframes(n_frames)
    except (wave.Error, EOFError, OSError) as exc:
        raise LoadError(f"Failed to open WAV file '{path}': {exc}") from exc

    if n_channels not in (1, 2):
        raise LoadError(f"Unsupported channel count: {n_channels} (only mono/stereo supported)")
    if not MIN_SAMPLE_RATE <= sample_rate <= MAX_SAMPLE_RATE:
        raise LoadError(f"Invalid sample rate: {sample_rate} Hz (must be 8kHz-192kHz)")

    data = _decode_pcm(raw_bytes, sample_width)
    frames = data.size // n_channels
    if frames == 0:
        raise LoadError(f"Empty audio file: {path}")
    data = data[: frames * n_channels]
    if n_channels == 2:
        data = data.reshape(frames, 2)

    buffer = SampleBuffer.from_array(data, sample_rate)
    logger.info(
        "Loaded WAV file: %s (%d channels, %d Hz, %d-bit, %d frames)",
        path.name,
        n_channels,
        sample_rate,
        sample_width * 8,
        frames,
    )
    return buffer


__all__ = ["BufferView", "LoadError", "SampleBuffer", "load_sample_buffer"]
