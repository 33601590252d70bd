from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, replace
import threading
from typing import Callable, Dict, Mapping, Optional, Protocol

from .models import DecoderMode, DecoderParams

logger = logging.getLogger(__name__)

ENV_PREFIX = "VOYAGER_"


@dataclass(frozen=True)
class DecoderSettings:
    default_line_duration_ms: float = 10.0
    default_threshold: float = 0.2
    default_mode: DecoderMode = DecoderMode.BINARY_GRAYSCALE
    decode_window_secs: float = 2.0       # audio handed to each decode request
    decode_interval_secs: float = 0.5     # playback advance between decode requests
    fft_chunk_size: int = 2048
    sync_threshold_multiplier: float = 10.0
    target_sync_freq_hz: float = 1200.0
    sync_min_spacing_ms: float = 100.0
    detect_sync_in_window: bool = True

    def default_params(self) -> DecoderParams:
        return DecoderParams(
            line_duration_ms=self.default_line_duration_ms,
            threshold=self.default_threshold,
            mode=self.default_mode,
        )


@dataclass(frozen=True)
class WorkerSettings:
    request_queue_size: int = 8
    result_queue_size: int = 8
    max_unresponsive_ms: int = 5000
    auto_restart: bool = True
    discard_superseded: bool = False


@dataclass(frozen=True)
class PlaybackSettings:
    audio_enabled: bool = True
    gain: float = 0.5
    device: Optional[str] = None
    buffersize_msec: int = 50


@dataclass(frozen=True)
class AppSettings:
    decoder: DecoderSettings = field(default_factory=DecoderSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    playback: PlaybackSettings = field(default_factory=PlaybackSettings)

    def validate(self) -> None:
        dec = self.decoder
        if not 1.0 <= dec.default_line_duration_ms <= 100.0:
            raise ValueError(f"Line duration {dec.default_line_duration_ms}ms out of range 1-100ms")
        if not 0.0 <= dec.default_threshold <= 1.0:
            raise ValueError(f"Threshold {dec.default_threshold} out of range 0.0-1.0")
        chunk = int(dec.fft_chunk_size)
        if chunk <= 0 or chunk & (chunk - 1):
            raise ValueError(f"FFT chunk size {chunk} must be power of 2")
        if dec.decode_window_secs <= 0:
            raise ValueError("decode_window_secs must be positive")
        if dec.decode_interval_secs < 0:
            raise ValueError("decode_interval_secs must be non-negative")
        if dec.sync_threshold_multiplier <= 0:
            raise ValueError("sync_threshold_multiplier must be positive")
        if dec.target_sync_freq_hz <= 0:
            raise ValueError("target_sync_freq_hz must be positive")
        if dec.sync_min_spacing_ms < 0:
            raise ValueError("sync_min_spacing_ms must be non-negative")
        if self.worker.request_queue_size <= 0 or self.worker.result_queue_size <= 0:
            raise ValueError("Worker queue size must be > 0")
        if self.worker.max_unresponsive_ms <= 0:
            raise ValueError("max_unresponsive_ms must be positive")
        if not 0.0 <= self.playback.gain <= 1.0:
            raise ValueError(f"Gain {self.playback.gain} out of range 0.0-1.0")
        if self.playback.buffersize_msec <= 0:
            raise ValueError("buffersize_msec must be positive")

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["decoder"]["default_mode"] = self.decoder.default_mode.value
        return data

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "AppSettings":
        """
        Build settings from defaults overridden by VOYAGER_* environment variables.

        Raises:
            ValueError: an override cannot be parsed or the result is invalid.
        """
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            if value is None or value.strip() == "":
                return None
            return value.strip()

        def _flag(value: str) -> bool:
            return value.lower() in ("1", "true", "yes", "on")

        decoder_kwargs: Dict[str, object] = {}
        worker_kwargs: Dict[str, object] = {}
        playback_kwargs: Dict[str, object] = {}

        overrides = (
            ("LINE_DURATION_MS", decoder_kwargs, "default_line_duration_ms", float),
            ("THRESHOLD", decoder_kwargs, "default_threshold", float),
            ("MODE", decoder_kwargs, "default_mode", DecoderMode),
            ("DECODE_WINDOW_SECS", decoder_kwargs, "decode_window_secs", float),
            ("QUEUE_SIZE", worker_kwargs, "request_queue_size", int),
            ("QUEUE_SIZE", worker_kwargs, "result_queue_size", int),
            ("AUDIO_ENABLED", playback_kwargs, "audio_enabled", _flag),
            ("GAIN", playback_kwargs, "gain", float),
            ("AUDIO_DEVICE", playback_kwargs, "device", str),
        )
        for name, target, key, convert in overrides:
            value = _get(name)
            if value is not None:
                target[key] = convert(value)

        settings = AppSettings(
            decoder=DecoderSettings(**decoder_kwargs),
            worker=WorkerSettings(**worker_kwargs),
            playback=PlaybackSettings(**playback_kwargs),
        )
        settings.validate()
        return settings


class SettingsPersistence(Protocol):
    def load(self) -> Optional[AppSettings]:
        ...

    def save(self, settings: AppSettings) -> None:
        ...


class InMemoryPersistence:
    """Keeps the last saved settings in memory; used headless and in tests."""

    def __init__(self, initial: Optional[AppSettings] = None) -> None:
        self._saved = initial

    def load(self) -> Optional[AppSettings]:
        return self._saved

    def save(self, settings: AppSettings) -> None:
        self._saved = settings


class AppSettingsStore:
    """Thread-safe settings store that notifies subscribers on every change."""

    def __init__(
        self,
        initial: Optional[AppSettings] = None,
        *,
        persistence: Optional[SettingsPersistence] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[AppSettings], None]] = {}
        self._next_token = 0
        self._persistence = persistence or InMemoryPersistence()
        settings = initial or self._persistence.load() or AppSettings()
        settings.validate()
        self._settings = settings

    def get(self) -> AppSettings:
        with self._lock:
            return self._settings

    def update(self, **sections) -> AppSettings:
        """
        Replace fields per section, e.g. ``update(decoder={"default_threshold": 0.3})``.

        The new settings are validated before they are published; an invalid
        update leaves the store unchanged and raises ValueError.
        """
        with self._lock:
            current = self._settings
            changes = {}
            for name, fields in sections.items():
                section = getattr(current, name, None)
                if section is None:
                    raise ValueError(f"Unknown settings section: {name}")
                changes[name] = replace(section, **fields)
            new_settings = replace(current, **changes)
            new_settings.validate()
            self._settings = new_settings
            callbacks = list(self._subscribers.values())
            self._persistence.save(new_settings)
        for callback in callbacks:
            try:
                callback(new_settings)
            except Exception as exc:
                logger.debug("App settings subscriber callback failed: %s", exc)
                continue
        return new_settings

    def subscribe(self, callback: Callable[[AppSettings], None], *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            snapshot = self._settings
        if replay:
            callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe


__all__ = [
    "AppSettings",
    "AppSettingsStore",
    "DecoderSettings",
    "InMemoryPersistence",
    "PlaybackSettings",
    "SettingsPersistence",
    "WorkerSettings",
]
