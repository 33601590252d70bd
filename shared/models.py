from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .sample_buffer import BufferView

IMAGE_WIDTH = 512


def _freeze_array(array: np.ndarray, *, dtype=None, ndim: int | None = None) -> np.ndarray:
    """Return a read-only, C-contiguous view of `array`, validating dimensions."""
    arr = np.ascontiguousarray(array, dtype=dtype)
    if ndim is not None and arr.ndim != ndim:
        raise ValueError(f"array must be {ndim}D, got {arr.ndim}D")
    if arr.flags.writeable:
        arr = arr.view()
        arr.setflags(write=False)
    return arr


class ChannelId(Enum):
    LEFT = 0
    RIGHT = 1


class DecoderMode(Enum):
    BINARY_GRAYSCALE = "binary_grayscale"
    PSEUDO_COLOR = "pseudo_color"

    @property
    def channels_per_pixel(self) -> int:
        return 3 if self is DecoderMode.PSEUDO_COLOR else 1


# ----------------------------
# Decoder parameters
# ----------------------------

@dataclass(frozen=True)
class DecoderParams:
    """Per-request decoder configuration. Copied freely, never shared mutably."""

    line_duration_ms: float = 10.0
    threshold: float = 0.2
    mode: DecoderMode = DecoderMode.BINARY_GRAYSCALE

    def __post_init__(self) -> None:
        if not 1.0 <= float(self.line_duration_ms) <= 100.0:
            raise ValueError("line_duration_ms must be within 1.0..100.0")
        if not 0.0 <= float(self.threshold) <= 1.0:
            raise ValueError("threshold must be within 0.0..1.0")
        if not isinstance(self.mode, DecoderMode):
            object.__setattr__(self, "mode", DecoderMode(self.mode))
        object.__setattr__(self, "line_duration_ms", float(self.line_duration_ms))
        object.__setattr__(self, "threshold", float(self.threshold))

    def samples_per_line(self, sample_rate: int) -> int:
        # Round half away from zero; a line always holds at least one sample.
        exact = self.line_duration_ms / 1000.0 * float(sample_rate)
        return max(1, int(np.floor(exact + 0.5)))


# ----------------------------
# Worker messages
# ----------------------------

@dataclass(frozen=True)
class DecodeRequest:
    """Decode the samples of `view` with `params`; `generation` orders requests."""

    generation: int
    view: "BufferView"
    params: DecoderParams
    sample_rate: int

    def __post_init__(self) -> None:
        if self.generation < 0:
            raise ValueError("generation must be non-negative")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")


@dataclass(frozen=True)
class DecodeResult:
    """
    Pixels produced for one DecodeRequest.

    `pixels` is shaped (height, width) for grayscale and (height, width, 3) for
    pseudo-color and is read-only. `error` is set when the decode failed; the
    pixel array is then empty.
    """

    generation: int
    start_sample: int
    pixels: np.ndarray = field(repr=False)
    mode: DecoderMode = DecoderMode.BINARY_GRAYSCALE
    sync_positions: Tuple[int, ...] = ()
    decode_duration: float = 0.0
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.start_sample < 0:
            raise ValueError("start_sample must be non-negative")
        expected_ndim = 3 if self.mode is DecoderMode.PSEUDO_COLOR else 2
        pixels = _freeze_array(self.pixels, dtype=np.uint8, ndim=expected_ndim)
        if pixels.shape[1] != IMAGE_WIDTH:
            raise ValueError(f"pixels must be {IMAGE_WIDTH} wide, got {pixels.shape[1]}")
        object.__setattr__(self, "pixels", pixels)
        object.__setattr__(self, "sync_positions", tuple(int(p) for p in self.sync_positions))

    @property
    def width(self) -> int:
        return IMAGE_WIDTH

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(
        cls,
        generation: int,
        start_sample: int,
        mode: DecoderMode,
        error: str,
        *,
        decode_duration: float = 0.0,
    ) -> "DecodeResult":
        return cls(
            generation=generation,
            start_sample=start_sample,
            pixels=empty_pixels(mode),
            mode=mode,
            decode_duration=decode_duration,
            error=error,
        )


@dataclass(frozen=True)
class SyncSearchRequest:
    """Find the first sync onset strictly after `after` inside `view`."""

    search_id: int
    view: "BufferView"
    after: int
    sample_rate: int


@dataclass(frozen=True)
class SyncSearchResult:
    search_id: int
    position: Optional[int]
    error: Optional[str] = None


def empty_pixels(mode: DecoderMode) -> np.ndarray:
    if mode is DecoderMode.PSEUDO_COLOR:
        return np.zeros((0, IMAGE_WIDTH, 3), dtype=np.uint8)
    return np.zeros((0, IMAGE_WIDTH), dtype=np.uint8)


def _restore_end_of_stream() -> "_EndOfStreamSentinel":
    return EndOfStream


class _EndOfStreamSentinel:
    __slots__ = ()

    def __repr__(self) -> str:
        return "EndOfStream"

    def __reduce__(self):
        return (_restore_end_of_stream, ())


EndOfStream = _EndOfStreamSentinel()


__all__ = [
    "IMAGE_WIDTH",
    "ChannelId",
    "DecoderMode",
    "DecoderParams",
    "DecodeRequest",
    "DecodeResult",
    "SyncSearchRequest",
    "SyncSearchResult",
    "EndOfStream",
    "empty_pixels",
]
