import pickle

import numpy as np
import pytest

from core import DecodeResult, DecoderMode, DecoderParams, EndOfStream
from shared.models import IMAGE_WIDTH, DecodeRequest, empty_pixels
from shared.sample_buffer import SampleBuffer


def test_decoder_params_defaults_and_validation():
    params = DecoderParams()
    assert params.line_duration_ms == 10.0
    assert params.threshold == 0.2
    assert params.mode is DecoderMode.BINARY_GRAYSCALE

    with pytest.raises(ValueError):
        DecoderParams(line_duration_ms=0.5)
    with pytest.raises(ValueError):
        DecoderParams(line_duration_ms=100.5)
    with pytest.raises(ValueError):
        DecoderParams(threshold=-0.01)
    with pytest.raises(ValueError):
        DecoderParams(threshold=1.01)

    coerced = DecoderParams(mode="pseudo_color")
    assert coerced.mode is DecoderMode.PSEUDO_COLOR


def test_samples_per_line_rounds_to_nearest():
    assert DecoderParams(line_duration_ms=10.0).samples_per_line(44100) == 441
    assert DecoderParams(line_duration_ms=1.0).samples_per_line(44100) == 44  # 44.1
    assert DecoderParams(line_duration_ms=1.0).samples_per_line(48000) == 48
    assert DecoderParams(line_duration_ms=2.0).samples_per_line(22050) == 44  # 44.1
    assert DecoderParams(line_duration_ms=3.0).samples_per_line(22050) == 66  # 66.15
    # Never zero, even for absurdly low rates.
    assert DecoderParams(line_duration_ms=1.0).samples_per_line(100) == 1


def test_decode_result_pixels_are_readonly_and_validated():
    pixels = np.zeros((3, IMAGE_WIDTH), dtype=np.uint8)
    result = DecodeResult(generation=1, start_sample=0, pixels=pixels)
    assert result.height == 3
    assert result.width == IMAGE_WIDTH
    assert result.ok
    assert not result.pixels.flags.writeable
    with pytest.raises(ValueError):
        result.pixels[0, 0] = 1

    with pytest.raises(ValueError):
        DecodeResult(generation=1, start_sample=0, pixels=np.zeros((3, 100), dtype=np.uint8))
    with pytest.raises(ValueError):
        DecodeResult(
            generation=1,
            start_sample=0,
            pixels=np.zeros((3, IMAGE_WIDTH), dtype=np.uint8),
            mode=DecoderMode.PSEUDO_COLOR,
        )
    with pytest.raises(ValueError):
        DecodeResult(generation=1, start_sample=-1, pixels=pixels)


def test_failed_result_is_empty_and_carries_error():
    result = DecodeResult.failed(7, 100, DecoderMode.PSEUDO_COLOR, "boom", decode_duration=0.25)
    assert not result.ok
    assert result.error == "boom"
    assert result.pixels.shape == (0, IMAGE_WIDTH, 3)
    assert result.decode_duration == 0.25


def test_empty_pixels_shapes():
    assert empty_pixels(DecoderMode.BINARY_GRAYSCALE).shape == (0, IMAGE_WIDTH)
    assert empty_pixels(DecoderMode.PSEUDO_COLOR).shape == (0, IMAGE_WIDTH, 3)


def test_decode_request_rejects_negative_generation():
    buf = SampleBuffer.from_array(np.zeros(100, dtype=np.float32), 8000)
    view = buf.view(0, 0, 10)
    with pytest.raises(ValueError):
        DecodeRequest(generation=-1, view=view, params=DecoderParams(), sample_rate=8000)
    with pytest.raises(ValueError):
        DecodeRequest(generation=0, view=view, params=DecoderParams(), sample_rate=0)


def test_end_of_stream_is_singleton_through_pickle():
    assert pickle.loads(pickle.dumps(EndOfStream)) is EndOfStream
    assert repr(EndOfStream) == "EndOfStream"
