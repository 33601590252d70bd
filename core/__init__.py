"""Core application utilities."""

from .detection import SyncDetector
from .playback_state import (
    AudioDeviceError,
    AudioErrorKind,
    PlaybackMetrics,
    PlaybackPhase,
    PlaybackState,
)
from .controller import PlaybackController
from shared.models import ChannelId, DecodeRequest, DecodeResult, DecoderMode, DecoderParams, EndOfStream

__all__ = [
    "AudioDeviceError",
    "AudioErrorKind",
    "ChannelId",
    "DecodeRequest",
    "DecodeResult",
    "DecoderMode",
    "DecoderParams",
    "EndOfStream",
    "PlaybackController",
    "PlaybackMetrics",
    "PlaybackPhase",
    "PlaybackState",
    "SyncDetector",
]
