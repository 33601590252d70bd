"""
End-to-end tests: WAV file -> SampleBuffer -> controller -> threaded worker.

These tests drive the real DecodeWorker thread. Playback position uses a
ManualClock so positions are exact; only result arrival is waited on.
"""
from __future__ import annotations

import time

import numpy as np
import pytest

from core.controller import PlaybackController
from core.playback_state import PLAYING, READY
from shared.app_settings import AppSettings
from shared.models import IMAGE_WIDTH, ChannelId, DecoderMode, DecoderParams
from test.fixtures.controlled_sink import ControlledSink, ManualClock
from test.fixtures.signal_generators import make_line_pattern, make_tone_bursts, write_wav

SR = 44100
SPL = 441


def _wait_for(controller: PlaybackController, predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        controller.poll_results()
        if predicate():
            return True
        time.sleep(0.005)
    return False


@pytest.fixture
def golden_wav(tmp_path):
    """Sync tone, then an image of alternating black/white lines on the right channel."""
    tone, _ = make_tone_bursts([("silence", 0.25), ("tone", 0.3), ("silence", 0.05)], SR)
    image = make_line_pattern([0.8, 0.0] * 100, SPL)  # 200 lines, 2 s
    tail = np.zeros(SR // 2, dtype=np.float32)
    right = np.concatenate([tone, image, tail])
    left = np.zeros_like(right)
    frames = np.stack([left, right], axis=1)
    path = write_wav(tmp_path / "golden.wav", frames, SR)
    return path, tone.shape[0]


@pytest.fixture
def controller():
    clock = ManualClock()
    sink = ControlledSink()
    ctl = PlaybackController(settings=AppSettings(), sink_factory=lambda: sink, clock=clock)
    ctl.test_clock = clock
    ctl.test_sink = sink
    yield ctl
    ctl.shutdown()


def test_load_seek_and_decode_image(controller, golden_wav):
    path, image_start = golden_wav
    buffer = controller.load_file(path)
    assert buffer.channel_count == 2
    assert controller.state == READY

    controller.set_channel(ChannelId.RIGHT)
    controller.seek(image_start)
    target = controller.last_issued_generation
    assert _wait_for(controller, lambda: controller.last_applied_generation == target)

    result = controller.latest_result
    assert result.start_sample == image_start
    assert result.pixels.shape == (200, IMAGE_WIDTH)
    # Alternating lines: white, black, white, ...
    assert np.all(result.pixels[0::2] == 255)
    assert np.all(result.pixels[1::2] == 0)


def test_jump_to_sync_then_play(controller, golden_wav):
    path, _ = golden_wav
    controller.load_file(path)
    controller.set_channel(ChannelId.RIGHT)

    assert controller.seek_to_next_sync()
    assert _wait_for(controller, lambda: controller.position > 0)
    assert abs(controller.position - int(0.25 * SR)) <= 2048

    start = controller.position
    controller.play()
    assert controller.state == PLAYING
    assert controller.test_sink.last_offset == start
    controller.test_clock.advance(1.0)
    controller.tick()
    assert controller.position == start + SR
    target = controller.last_issued_generation
    assert _wait_for(controller, lambda: controller.last_applied_generation == target)
    assert controller.latest_result.start_sample == start + SR


def test_pseudo_color_pipeline(controller, golden_wav):
    path, image_start = golden_wav
    controller.load_file(path)
    controller.set_channel(ChannelId.RIGHT)
    controller.seek(image_start)
    controller.set_params(DecoderParams(mode=DecoderMode.PSEUDO_COLOR))
    target = controller.last_issued_generation
    assert _wait_for(controller, lambda: controller.last_applied_generation == target)

    pixels = controller.latest_result.pixels
    assert pixels.shape == (67, IMAGE_WIDTH, 3)  # ceil(200 / 3)
    # Row 0 holds lines 0 (white), 1 (black), 2 (white).
    assert np.all(pixels[0, :, 0] == 255)
    assert np.all(pixels[0, :, 1] == 0)
    assert np.all(pixels[0, :, 2] == 255)


def test_silent_second_scenario(tmp_path):
    path = write_wav(tmp_path / "silence.wav", np.zeros(SR, dtype=np.float32), SR)
    ctl = PlaybackController(settings=AppSettings())
    try:
        ctl.load_file(path)
        assert _wait_for(ctl, lambda: ctl.latest_result is not None)
        result = ctl.latest_result
        assert result.sync_positions == ()
        assert result.pixels.shape == (SR // SPL, IMAGE_WIDTH)
        assert not result.pixels.any()

        ctl.seek(ctl.buffer.total_sample_count + 1000)
        target = ctl.last_issued_generation
        assert _wait_for(ctl, lambda: ctl.last_applied_generation == target)
        assert ctl.latest_result.height == 0
    finally:
        ctl.shutdown()


def test_playback_to_end_then_replay(controller, golden_wav):
    path, _ = golden_wav
    controller.load_file(path)
    total = controller.buffer.total_sample_count
    controller.play()
    controller.test_clock.advance(total / SR + 0.1)
    controller.tick()
    assert controller.state == READY
    assert controller.position == 0
    assert controller.play()
    assert controller.test_sink.last_offset == 0
