"""
Performance and stability tests.

These tests verify system behavior under extended operation:
1. No memory growth from repeated views, seeks and decodes
2. No thread count growth across controller create/shutdown cycles
3. Queue depths stay bounded
4. Decode latency stays well under the display tick

Marked with @pytest.mark.slow as they take significant time.
Typically run in nightly CI, not on every commit.
"""
from __future__ import annotations

import gc
import threading
import time
import tracemalloc

import numpy as np
import pytest

from analysis.line_decoder import LineDecoder
from core.controller import PlaybackController
from shared.app_settings import AppSettings
from shared.models import ChannelId, DecoderMode, DecoderParams
from shared.sample_buffer import SampleBuffer
from test.fixtures.controlled_sink import ControlledSink, InlineDecodeWorker, ManualClock

SR = 44100


def _buffer(seconds: float = 60.0, channels: int = 2) -> SampleBuffer:
    rng = np.random.default_rng(3)
    data = rng.uniform(-1, 1, (int(seconds * SR), channels)).astype(np.float32)
    return SampleBuffer.from_array(data, SR)


def _growth(before, after) -> int:
    stats = after.compare_to(before, "lineno")
    return sum(s.size_diff for s in stats if s.size_diff > 0)


@pytest.mark.slow
class TestMemoryStability:
    """Tests for memory stability over extended operation."""

    def test_views_do_not_copy(self):
        """Thousands of views over a large buffer should allocate almost nothing."""
        buf = _buffer()
        for _ in range(10):
            buf.view(ChannelId.RIGHT, 0, SR)

        gc.collect()
        tracemalloc.start()
        before = tracemalloc.take_snapshot()

        for i in range(5000):
            view = buf.view(ChannelId.RIGHT, (i * 997) % buf.total_sample_count, 2 * SR)
            assert view.samples.base is not None or view.length == 0

        gc.collect()
        after = tracemalloc.take_snapshot()
        tracemalloc.stop()

        growth = _growth(before, after)
        # One copied 2 s window alone would be 350 KB.
        assert growth < 200_000, f"Memory grew by {growth / 1024:.1f} KB"

    def test_controller_seek_decode_no_growth(self):
        """Seek/decode cycles keep only the newest result alive."""
        ctl = PlaybackController(
            settings=AppSettings(),
            sink_factory=ControlledSink,
            worker_factory=lambda s: InlineDecodeWorker(decoder_settings=s.decoder),
            clock=ManualClock(),
            start_worker=False,
        )
        try:
            ctl.load(_buffer())
            for i in range(20):
                ctl.seek(i * SR)
                ctl.poll_results()

            gc.collect()
            tracemalloc.start()
            before = tracemalloc.take_snapshot()

            for i in range(500):
                ctl.seek((i * 7919) % ctl.buffer.total_sample_count)
                ctl.poll_results()

            gc.collect()
            after = tracemalloc.take_snapshot()
            tracemalloc.stop()

            growth = _growth(before, after)
            # A couple of retained results plus the bounded latency history.
            assert growth < 2_000_000, f"Memory grew by {growth / 1024:.1f} KB"
            assert ctl.worker.output_queue.qsize() == 0
            assert ctl.outstanding_requests == 0
        finally:
            ctl.shutdown()

    def test_playback_ticks_no_growth(self):
        clock = ManualClock()
        ctl = PlaybackController(
            settings=AppSettings(),
            sink_factory=ControlledSink,
            worker_factory=lambda s: InlineDecodeWorker(decoder_settings=s.decoder),
            clock=clock,
            start_worker=False,
        )
        try:
            ctl.load(_buffer(200.0, channels=1))
            ctl.play()
            for _ in range(50):
                clock.advance(1 / 30)
                ctl.tick()

            gc.collect()
            tracemalloc.start()
            before = tracemalloc.take_snapshot()

            for _ in range(3000):  # 100 s of playback at 30 Hz
                clock.advance(1 / 30)
                ctl.tick()

            gc.collect()
            after = tracemalloc.take_snapshot()
            tracemalloc.stop()

            assert ctl.state.is_playing
            growth = _growth(before, after)
            assert growth < 2_000_000, f"Memory grew by {growth / 1024:.1f} KB"
        finally:
            ctl.shutdown()


@pytest.mark.slow
class TestThreadStability:
    def test_no_thread_leak_across_controllers(self):
        gc.collect()
        baseline = threading.active_count()

        for _ in range(20):
            ctl = PlaybackController(settings=AppSettings())
            ctl.load(_buffer(5.0, channels=1))
            ctl.seek(SR)
            ctl.shutdown()

        deadline = time.monotonic() + 2.0
        while threading.active_count() > baseline and time.monotonic() < deadline:
            time.sleep(0.01)
        assert threading.active_count() <= baseline

    def test_restart_cycles_do_not_leak_threads(self):
        baseline = threading.active_count()
        ctl = PlaybackController(settings=AppSettings())
        try:
            ctl.load(_buffer(5.0, channels=1))
            for _ in range(10):
                ctl.restart_worker()
            assert ctl.stats.worker_restarts == 10
        finally:
            ctl.shutdown()

        deadline = time.monotonic() + 3.0
        while threading.active_count() > baseline and time.monotonic() < deadline:
            time.sleep(0.01)
        assert threading.active_count() <= baseline


@pytest.mark.slow
class TestTiming:
    def test_decode_latency_fits_display_tick(self):
        buf = _buffer(10.0, channels=1)
        decoder = LineDecoder()
        view = buf.view(ChannelId.LEFT, 0, 2 * SR)
        for mode in DecoderMode:
            params = DecoderParams(mode=mode)
            decoder.decode(view, params)
            start = time.perf_counter()
            for _ in range(20):
                decoder.decode(view, params)
            per_decode = (time.perf_counter() - start) / 20
            assert per_decode < 0.1, f"{mode.value} decode took {per_decode * 1000:.1f} ms"
