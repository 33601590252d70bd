"""
Property-based tests for SyncDetector.

Properties verified:
1. Onsets are sorted, inside the view, and chunk-aligned to the view offset
2. Consecutive onsets respect the minimum spacing
3. detect() agrees with find(); find_next() agrees with find()
4. Every synthetic tone burst is found within one chunk of its start
"""
from __future__ import annotations

import numpy as np
from hypothesis import given, settings, strategies as st

from core.detection import SyncDetector
from shared.models import ChannelId
from shared.sample_buffer import SampleBuffer
from test.fixtures.signal_generators import make_tone_bursts

SR = 22050
CHUNK = 1024

segment = st.tuples(
    st.sampled_from(["tone", "silence"]),
    st.floats(min_value=0.15, max_value=0.6, allow_nan=False),
)


def _alternating(segments):
    """Insert silence between adjacent tones so each tone is its own burst."""
    out = [("silence", 0.3)]
    for kind, seconds in segments:
        if kind == "tone" and out[-1][0] == "tone":
            out.append(("silence", 0.3))
        out.append((kind, seconds))
    out.append(("silence", 0.3))
    return out


class TestSyncDetectorProperties:
    @given(
        segments=st.lists(segment, min_size=1, max_size=6),
        offset=st.integers(min_value=0, max_value=5000),
    )
    @settings(max_examples=40, deadline=None)
    def test_onset_invariants(self, segments, offset):
        signal, truth = make_tone_bursts(_alternating(segments), SR)
        buf = SampleBuffer.from_array(signal, SR)
        view = buf.view_to_end(ChannelId.LEFT, offset)
        det = SyncDetector(chunk_size=CHUNK, min_spacing_ms=100.0)

        onsets = det.find(view)
        assert onsets == sorted(onsets)
        assert all(view.offset <= o < view.end for o in onsets)
        assert all((o - view.offset) % CHUNK == 0 for o in onsets)
        spacing = int(0.1 * SR)
        assert all(b - a >= spacing for a, b in zip(onsets, onsets[1:]))
        assert det.detect(view) == bool(onsets)

        if onsets:
            assert det.find_next(view, view.offset - 1) == onsets[0]
            assert det.find_next(view, onsets[-1]) is None

    @given(segments=st.lists(segment, min_size=1, max_size=6))
    @settings(max_examples=40, deadline=None)
    def test_every_burst_is_found(self, segments):
        signal, truth = make_tone_bursts(_alternating(segments), SR)
        buf = SampleBuffer.from_array(signal, SR)
        onsets = SyncDetector(chunk_size=CHUNK, min_spacing_ms=0.0).find(buf.view_to_end(ChannelId.LEFT, 0))

        assert len(onsets) == len(truth)
        for found, expected in zip(onsets, truth):
            assert abs(found - int(expected)) <= CHUNK
