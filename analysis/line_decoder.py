"""Convert a window of audio samples into fixed-width pixel rows.

Each decoded line covers ``samples_per_line`` samples and is reduced to
IMAGE_WIDTH bins by mean absolute amplitude. Grayscale mode thresholds every
bin to 0/255; pseudo-color mode stacks three consecutive lines into the red,
green and blue planes of one output row.
"""
from __future__ import annotations

import math

import numpy as np

from shared.models import IMAGE_WIDTH, DecoderMode, DecoderParams, empty_pixels
from shared.sample_buffer import BufferView


def bin_line_levels(block: np.ndarray, width: int = IMAGE_WIDTH) -> np.ndarray:
    """
    Reduce each row of `block` (n_lines, line_len) to `width` mean-|x| bins.

    Bins get ``line_len // width`` samples each and the last bin takes the
    remainder. Lines shorter than `width` are stretched instead: pixel x reads
    the magnitude of sample ``x * line_len // width``.
    """
    block = np.abs(np.asarray(block, dtype=np.float32))
    n_lines, line_len = block.shape
    if n_lines == 0 or line_len == 0:
        return np.zeros((n_lines, width), dtype=np.float32)

    bin_size = line_len // width
    if bin_size == 0:
        idx = (np.arange(width) * line_len) // width
        return block[:, idx]

    head = width - 1
    levels = np.empty((n_lines, width), dtype=np.float32)
    levels[:, :head] = block[:, : head * bin_size].reshape(n_lines, head, bin_size).mean(axis=2)
    levels[:, head] = block[:, head * bin_size :].mean(axis=1)
    return levels


class LineDecoder:
    """Stateless line decoder; `decode` is a pure function of its arguments."""

    width = IMAGE_WIDTH

    def line_count(self, n_samples: int, params: DecoderParams, sample_rate: int) -> int:
        if n_samples <= 0:
            return 0
        return math.ceil(n_samples / params.samples_per_line(sample_rate))

    def decode_levels(self, samples: np.ndarray, params: DecoderParams, sample_rate: int) -> np.ndarray:
        """Return per-line bin levels shaped (line_count, width), float32."""
        samples = np.asarray(samples, dtype=np.float32)
        n_samples = samples.shape[0]
        if n_samples == 0:
            return np.zeros((0, self.width), dtype=np.float32)

        spl = params.samples_per_line(sample_rate)
        n_full = n_samples // spl
        remainder = n_samples - n_full * spl

        parts = []
        if n_full:
            parts.append(bin_line_levels(samples[: n_full * spl].reshape(n_full, spl), self.width))
        if remainder:
            # Trailing partial line decodes from the samples it has.
            parts.append(bin_line_levels(samples[n_full * spl :].reshape(1, remainder), self.width))
        return parts[0] if len(parts) == 1 else np.concatenate(parts, axis=0)

    def decode_samples(self, samples: np.ndarray, params: DecoderParams, sample_rate: int) -> np.ndarray:
        levels = self.decode_levels(samples, params, sample_rate)
        if levels.shape[0] == 0:
            return empty_pixels(params.mode)

        gray = np.where(levels > params.threshold, 255, 0).astype(np.uint8)
        if params.mode is DecoderMode.BINARY_GRAYSCALE:
            return gray

        n_lines = gray.shape[0]
        rows = math.ceil(n_lines / 3)
        color = np.zeros((rows, self.width, 3), dtype=np.uint8)
        for plane in range(3):
            lines = gray[plane::3]
            color[: lines.shape[0], :, plane] = lines
        return color

    def decode(self, view: BufferView, params: DecoderParams, sample_rate: int | None = None) -> np.ndarray:
        """
        Decode `view` into pixels.

        Returns (height, width) uint8 for grayscale, (height, width, 3) for
        pseudo-color. Empty or degenerate input gives a zero-height array.
        """
        rate = int(sample_rate if sample_rate is not None else view.sample_rate)
        return self.decode_samples(view.samples, params, rate)


__all__ = ["LineDecoder", "bin_line_levels"]
