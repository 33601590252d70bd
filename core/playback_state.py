"""Explicit playback state, device error kinds and playback metrics."""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class AudioErrorKind(Enum):
    NO_DEVICE = "no_device"
    DEVICE_DISCONNECTED = "device_disconnected"
    FORMAT_UNSUPPORTED = "format_unsupported"
    BUFFER_UNDERRUN = "buffer_underrun"
    SINK_CREATION_FAILED = "sink_creation_failed"
    STREAM_INIT_FAILED = "stream_init_failed"
    SINK_NOT_AVAILABLE = "sink_not_available"

    @property
    def message(self) -> str:
        return _MESSAGES[self]

    @property
    def recoverable(self) -> bool:
        """True when the user can retry without reloading the file."""
        return self in _RECOVERABLE

    @property
    def user_action(self) -> str:
        return _USER_ACTIONS[self]

    def __str__(self) -> str:
        return self.message


_MESSAGES = {
    AudioErrorKind.NO_DEVICE: "No audio device available",
    AudioErrorKind.DEVICE_DISCONNECTED: "Audio device disconnected",
    AudioErrorKind.FORMAT_UNSUPPORTED: "Audio format not supported",
    AudioErrorKind.BUFFER_UNDERRUN: "Audio buffer underrun",
    AudioErrorKind.SINK_CREATION_FAILED: "Failed to create audio sink",
    AudioErrorKind.STREAM_INIT_FAILED: "Failed to initialize audio stream",
    AudioErrorKind.SINK_NOT_AVAILABLE: "Audio sink not available",
}

_USER_ACTIONS = {
    AudioErrorKind.NO_DEVICE: "Check audio device connection",
    AudioErrorKind.DEVICE_DISCONNECTED: "Reconnect audio device and retry",
    AudioErrorKind.FORMAT_UNSUPPORTED: "Audio format incompatible with device",
    AudioErrorKind.BUFFER_UNDERRUN: "Playback may stutter; try reducing system load",
    AudioErrorKind.SINK_CREATION_FAILED: "Retry playback",
    AudioErrorKind.STREAM_INIT_FAILED: "Restart application or check audio settings",
    AudioErrorKind.SINK_NOT_AVAILABLE: "Retry playback or restart application",
}

_RECOVERABLE = frozenset(
    {
        AudioErrorKind.DEVICE_DISCONNECTED,
        AudioErrorKind.BUFFER_UNDERRUN,
        AudioErrorKind.SINK_CREATION_FAILED,
        AudioErrorKind.SINK_NOT_AVAILABLE,
    }
)


class AudioDeviceError(RuntimeError):
    """Raised by audio sinks; the controller turns it into an Error state."""

    def __init__(self, kind: AudioErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        text = kind.message if not detail else f"{kind.message}: {detail}"
        super().__init__(text)


class PlaybackPhase(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True)
class PlaybackState:
    """Tagged playback state; `error` is set exactly when phase is ERROR."""

    phase: PlaybackPhase
    error: Optional[AudioErrorKind] = None

    def __post_init__(self) -> None:
        if (self.phase is PlaybackPhase.ERROR) != (self.error is not None):
            raise ValueError("error kind must be given exactly for the ERROR phase")

    @classmethod
    def failed(cls, kind: AudioErrorKind) -> "PlaybackState":
        return cls(PlaybackPhase.ERROR, kind)

    @property
    def is_playing(self) -> bool:
        return self.phase is PlaybackPhase.PLAYING

    @property
    def can_play(self) -> bool:
        return self.phase in (PlaybackPhase.READY, PlaybackPhase.PAUSED)

    @property
    def can_seek(self) -> bool:
        return self.phase in (PlaybackPhase.READY, PlaybackPhase.PLAYING, PlaybackPhase.PAUSED)

    @property
    def is_error(self) -> bool:
        return self.phase is PlaybackPhase.ERROR

    @property
    def status_message(self) -> str:
        if self.error is not None:
            return f"Audio error: {self.error.message}"
        return _STATUS[self.phase]

    def __str__(self) -> str:
        if self.error is not None:
            return f"Error: {self.error.message}"
        return self.phase.name.capitalize()


_STATUS = {
    PlaybackPhase.UNINITIALIZED: "No audio",
    PlaybackPhase.READY: "Audio ready",
    PlaybackPhase.PLAYING: "Playing",
    PlaybackPhase.PAUSED: "Paused",
}

UNINITIALIZED = PlaybackState(PlaybackPhase.UNINITIALIZED)
READY = PlaybackState(PlaybackPhase.READY)
PLAYING = PlaybackState(PlaybackPhase.PLAYING)
PAUSED = PlaybackState(PlaybackPhase.PAUSED)


class PlaybackMetrics:
    """Counters for one session; accumulate until `reset()`."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self.play_count = 0
        self.pause_count = 0
        self.stop_count = 0
        self.seek_count = 0
        self.buffer_underruns = 0
        self.device_errors = 0
        self.total_playback_time = 0.0
        self.last_state_change: Optional[float] = None
        self.last_device_name = "Unknown"

    def mark_state_change(self) -> None:
        self.last_state_change = self._clock()

    def record_play(self) -> None:
        self.play_count += 1
        self.mark_state_change()

    def record_pause(self) -> None:
        self.pause_count += 1
        self.mark_state_change()

    def record_stop(self) -> None:
        self.stop_count += 1
        self.mark_state_change()

    def record_seek(self) -> None:
        self.seek_count += 1

    def record_buffer_underrun(self) -> None:
        self.buffer_underruns += 1

    def record_device_error(self) -> None:
        self.device_errors += 1

    def add_playback_time(self, seconds: float) -> None:
        if seconds > 0:
            self.total_playback_time += seconds

    def summary(self) -> str:
        return (
            f"Audio Metrics: plays={self.play_count}, pauses={self.pause_count}, "
            f"stops={self.stop_count}, seeks={self.seek_count}, "
            f"playback_time={self.total_playback_time:.1f}s, "
            f"errors={self.device_errors + self.buffer_underruns}"
        )


__all__ = [
    "AudioDeviceError",
    "AudioErrorKind",
    "PlaybackMetrics",
    "PlaybackPhase",
    "PlaybackState",
    "UNINITIALIZED",
    "READY",
    "PLAYING",
    "PAUSED",
]
