from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

try:
    import miniaudio
except ImportError as e:  # pragma: no cover
    miniaudio = None
    _IMPORT_ERR = e

from core.playback_state import AudioDeviceError, AudioErrorKind
from shared.app_settings import PlaybackSettings
from shared.sample_buffer import BufferView


@dataclass
class AudioConfig:
    device: Optional[str] = None   # None = default output device, else a device name
    gain: float = 0.5
    buffersize_msec: int = 50      # miniaudio hardware buffer

    @classmethod
    def from_settings(cls, settings: PlaybackSettings) -> "AudioConfig":
        return cls(device=settings.device, gain=settings.gain, buffersize_msec=settings.buffersize_msec)


def list_output_devices(list_all: bool = False) -> List[Dict[str, object]]:
    """Return a list of available output devices using miniaudio."""
    if miniaudio is None:
        return []
    devices: List[Dict[str, object]] = []
    try:
        playback_devices = miniaudio.Devices().get_playbacks()
        for idx, dev in enumerate(playback_devices):
            # Handle both object attributes and dict access (miniaudio version differences)
            if isinstance(dev, dict):
                dev_id = dev.get("id", idx)
                dev_name = dev.get("name", f"Device {idx}")
            else:
                dev_id = getattr(dev, "id", idx)
                dev_name = getattr(dev, "name", f"Device {idx}")

            devices.append({"id": dev_id, "label": dev_name, "name": dev_name})

            if not list_all:
                # Just return the first one (default)
                break
    except Exception as exc:
        logger.warning("Failed to list output devices: %s", exc)
        return []
    return devices


class AudioSink(Protocol):
    """Output collaborator: plays one channel of a SampleBuffer from an offset."""

    @property
    def device_name(self) -> str:
        ...

    def open(self, view: BufferView) -> None:
        """Point the sink at `view`; playback starts at `view.offset`."""
        ...

    def play(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def close(self) -> None:
        ...


class MiniaudioSink:
    """
    Streams a BufferView through a miniaudio playback device.

    The sink holds the shared buffer view and a read cursor. Only the block
    requested by the device callback is materialized (scaled by gain); the
    backing samples are never copied as a whole, so re-opening at a new
    offset after a seek is O(1).
    """

    def __init__(self, config: Optional[AudioConfig] = None) -> None:
        if miniaudio is None:
            raise AudioDeviceError(AudioErrorKind.NO_DEVICE, f"`miniaudio` is not available: {_IMPORT_ERR!r}")
        self.cfg = config or AudioConfig()
        self._device_id, self._device_name = self._resolve_device(self.cfg.device)
        self._device: Optional[Any] = None
        self._device_rate = 0
        self._lock = threading.Lock()
        self._view: Optional[BufferView] = None
        self._cursor = 0

    @staticmethod
    def _resolve_device(name: Optional[str]) -> tuple[Any, str]:
        devices = list_output_devices(list_all=True)
        if not devices:
            raise AudioDeviceError(AudioErrorKind.NO_DEVICE)
        if name is None:
            return None, str(devices[0]["name"])
        for dev in devices:
            if dev["name"] == name:
                return dev["id"], str(dev["name"])
        raise AudioDeviceError(AudioErrorKind.NO_DEVICE, f"output device '{name}' not found")

    @property
    def device_name(self) -> str:
        return self._device_name

    @property
    def position(self) -> int:
        """Absolute sample index of the next sample to be played."""
        with self._lock:
            return self._cursor

    def _ensure_device(self, sample_rate: int) -> None:
        if self._device is not None and self._device_rate == sample_rate:
            return
        self._close_device()
        try:
            self._device = miniaudio.PlaybackDevice(
                device_id=self._device_id,
                nchannels=1,
                sample_rate=int(sample_rate),
                output_format=miniaudio.SampleFormat.FLOAT32,
                buffersize_msec=int(self.cfg.buffersize_msec),
            )
        except Exception as exc:
            self._device = None
            raise AudioDeviceError(AudioErrorKind.SINK_CREATION_FAILED, str(exc)) from exc
        self._device_rate = int(sample_rate)

    def open(self, view: BufferView) -> None:
        self.stop()
        self._ensure_device(view.sample_rate)
        with self._lock:
            self._view = view
            self._cursor = view.offset

    def _audio_generator(self):
        """Generator that yields float32 bytes for miniaudio."""
        required_frames = yield b""  # Initial yield
        while True:
            with self._lock:
                view = self._view
                start = self._cursor
                if view is None:
                    block = np.zeros(0, dtype=np.float32)
                else:
                    end = min(start + required_frames, view.end)
                    block = view.buffer.channel(view.channel)[start:end]
                    self._cursor = max(start, end)
            out = block * np.float32(self.cfg.gain)
            # Underrun / end of buffer: pad with silence
            if out.size < required_frames:
                out = np.pad(out, (0, required_frames - out.size))
            required_frames = yield out.astype(np.float32, copy=False).tobytes()

    def play(self) -> None:
        if self._view is None or self._device is None:
            raise AudioDeviceError(AudioErrorKind.SINK_NOT_AVAILABLE, "no stream opened")
        if getattr(self._device, "running", False):
            return
        try:
            gen = self._audio_generator()
            next(gen)
            self._device.start(gen)
        except Exception as exc:
            raise AudioDeviceError(AudioErrorKind.STREAM_INIT_FAILED, str(exc)) from exc

    def pause(self) -> None:
        # The cursor survives; play() resumes from it.
        if self._device is not None and getattr(self._device, "running", False):
            self._device.stop()

    def stop(self) -> None:
        self.pause()
        with self._lock:
            self._view = None
            self._cursor = 0

    def _close_device(self) -> None:
        if self._device is None:
            return
        try:
            if getattr(self._device, "running", False):
                self._device.stop()
            self._device.close()
        except Exception as exc:
            logger.debug("Failed to close playback device: %s", exc)
        self._device = None
        self._device_rate = 0

    def close(self) -> None:
        self.stop()
        self._close_device()


def make_default_sink(settings: PlaybackSettings) -> MiniaudioSink:
    """Sink factory used by the controller when audio output is enabled."""
    return MiniaudioSink(AudioConfig.from_settings(settings))


__all__ = ["AudioConfig", "AudioSink", "MiniaudioSink", "list_output_devices", "make_default_sink"]
