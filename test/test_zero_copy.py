import numpy as np
import pytest

from shared.models import ChannelId
from shared.sample_buffer import SampleBuffer


def test_buffer_shares_memory_with_contiguous_float32_input():
    """SampleBuffer should wrap a C-contiguous float32 array without copying."""
    original = np.zeros(1000, dtype=np.float32)
    original[10] = 0.5

    buf = SampleBuffer.from_array(original, 44100)

    assert np.shares_memory(original, buf.channel(ChannelId.LEFT))
    assert buf.channel(ChannelId.LEFT)[10] == 0.5
    assert buf.channel(ChannelId.LEFT).flags.writeable is False
    with pytest.raises(ValueError):
        buf.channel(ChannelId.LEFT)[0] = 1.0


def test_mono_channels_are_the_same_array():
    buf = SampleBuffer.from_array(np.arange(100, dtype=np.float32), 8000)
    assert buf.channel_count == 1
    assert buf.channel(ChannelId.LEFT) is buf.channel(ChannelId.RIGHT)


def test_views_never_copy_backing_samples():
    buf = SampleBuffer.from_array(np.linspace(-1, 1, 10_000, dtype=np.float32), 8000)
    backing = buf.channel(ChannelId.LEFT)

    for offset, length in [(0, 10_000), (1, 5), (9_999, 1), (5_000, 100_000), (20_000, 10)]:
        view = buf.view(ChannelId.LEFT, offset, length)
        samples = view.samples
        if view.length:
            assert np.shares_memory(samples, backing)
        assert not samples.flags.writeable


def test_stereo_deinterleave_happens_once_at_construction():
    frames = np.stack([np.ones(64), -np.ones(64)], axis=1).astype(np.float32)
    buf = SampleBuffer.from_array(frames, 8000)

    left = buf.channel(ChannelId.LEFT)
    right = buf.channel(ChannelId.RIGHT)
    assert left.flags.c_contiguous and right.flags.c_contiguous
    assert left is not right
    # Repeated access returns the same objects.
    assert buf.channel(ChannelId.LEFT) is left
    assert np.shares_memory(buf.view(ChannelId.RIGHT, 3, 10).samples, right)
