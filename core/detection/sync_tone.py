"""FFT-based detector for the fixed-frequency sync tone.

The input view is cut into fixed-size chunks. Each chunk is Hann-windowed and
transformed; the magnitude of the bin nearest the target frequency is compared
against either an explicit threshold or a multiple of the chunk's mean
spectral magnitude. A run of consecutive flagged chunks is one onset, placed
at the start of the first chunk of the run, and onsets closer than the
minimum spacing are merged into the earlier one.
"""
from __future__ import annotations

import logging
from typing import Iterator, List, Optional

import numpy as np
from scipy import fft as sp_fft
from scipy import signal

from shared.sample_buffer import BufferView

logger = logging.getLogger(__name__)

# Chunks transformed per vectorized FFT call; bounds memory on long views.
_CHUNKS_PER_BATCH = 256


class SyncDetector:
    def __init__(
        self,
        *,
        target_freq_hz: float = 1200.0,
        chunk_size: int = 2048,
        threshold_multiplier: float = 10.0,
        threshold: Optional[float] = None,
        min_spacing_ms: float = 100.0,
    ) -> None:
        self._target_freq_hz = 1200.0
        self._chunk_size = 2048
        self._threshold_multiplier = 10.0
        self._threshold: Optional[float] = None
        self._min_spacing_ms = 100.0
        self._window = signal.get_window("hann", self._chunk_size)
        self.configure(
            target_freq_hz=target_freq_hz,
            chunk_size=chunk_size,
            threshold_multiplier=threshold_multiplier,
            threshold=threshold,
            min_spacing_ms=min_spacing_ms,
        )

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def configure(self, **params) -> None:
        if "target_freq_hz" in params:
            freq = float(params["target_freq_hz"])
            if freq <= 0:
                raise ValueError("target_freq_hz must be positive")
            self._target_freq_hz = freq
        if "chunk_size" in params:
            size = int(params["chunk_size"])
            if size <= 0 or size & (size - 1):
                raise ValueError("chunk_size must be a positive power of two")
            if size != self._chunk_size:
                self._window = signal.get_window("hann", size)
            self._chunk_size = size
        if "threshold_multiplier" in params:
            mult = float(params["threshold_multiplier"])
            if mult <= 0:
                raise ValueError("threshold_multiplier must be positive")
            self._threshold_multiplier = mult
        if "threshold" in params:
            value = params["threshold"]
            self._threshold = None if value is None else float(value)
        if "min_spacing_ms" in params:
            spacing = float(params["min_spacing_ms"])
            if spacing < 0:
                raise ValueError("min_spacing_ms must be non-negative")
            self._min_spacing_ms = spacing

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _target_bin(self, sample_rate: int) -> int:
        n_bins = self._chunk_size // 2 + 1
        idx = int(round(self._target_freq_hz * self._chunk_size / float(sample_rate)))
        return min(max(idx, 0), n_bins - 1)

    def _flag_chunks(self, frames: np.ndarray, target_bin: int) -> np.ndarray:
        """Return a boolean per row of `frames` (n_chunks, chunk_size)."""
        windowed = frames.astype(np.float64) * self._window
        magnitudes = np.abs(sp_fft.rfft(windowed, axis=1)) / float(self._chunk_size)
        tone = magnitudes[:, target_bin]
        if self._threshold is not None:
            return tone > self._threshold
        mean = magnitudes.mean(axis=1)
        return tone > mean * self._threshold_multiplier

    def iter_onsets(self, view: BufferView) -> Iterator[int]:
        """
        Yield onset sample indices (absolute into the buffer) lazily.

        Degenerate input (empty, or shorter than one chunk) yields nothing.
        """
        samples = view.samples
        n_chunks = samples.shape[0] // self._chunk_size
        if n_chunks == 0:
            return
        sample_rate = view.sample_rate
        target_bin = self._target_bin(sample_rate)
        min_spacing = int(self._min_spacing_ms * 1e-3 * sample_rate)

        previous_flagged = False
        last_onset: Optional[int] = None
        for batch_start in range(0, n_chunks, _CHUNKS_PER_BATCH):
            batch_end = min(batch_start + _CHUNKS_PER_BATCH, n_chunks)
            lo = batch_start * self._chunk_size
            hi = batch_end * self._chunk_size
            frames = samples[lo:hi].reshape(batch_end - batch_start, self._chunk_size)
            flags = self._flag_chunks(frames, target_bin)
            for i, flagged in enumerate(flags):
                if flagged and not previous_flagged:
                    onset = view.offset + (batch_start + i) * self._chunk_size
                    if last_onset is None or onset - last_onset >= min_spacing:
                        last_onset = onset
                        yield onset
                previous_flagged = bool(flagged)

    def find(self, view: BufferView) -> List[int]:
        """Return all onsets in `view`, ascending."""
        return list(self.iter_onsets(view))

    def find_next(self, view: BufferView, after: int) -> Optional[int]:
        """Return the first onset strictly greater than `after`, or None."""
        for onset in self.iter_onsets(view):
            if onset > after:
                return onset
        return None

    def detect(self, view: BufferView) -> bool:
        """Return True when any chunk of `view` carries the sync tone."""
        for _ in self.iter_onsets(view):
            return True
        return False


__all__ = ["SyncDetector"]
