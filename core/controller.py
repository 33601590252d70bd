from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Union

from analysis.metrics import DecodeStats
from shared.app_settings import AppSettings, AppSettingsStore
from shared.models import (
    ChannelId,
    DecodeRequest,
    DecodeResult,
    DecoderParams,
    SyncSearchRequest,
    SyncSearchResult,
)
from shared.sample_buffer import BufferView, SampleBuffer, load_sample_buffer

from .playback_state import (
    PAUSED,
    PLAYING,
    READY,
    UNINITIALIZED,
    AudioDeviceError,
    AudioErrorKind,
    PlaybackMetrics,
    PlaybackPhase,
    PlaybackState,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from analysis.decode_worker import DecodeWorker
    from audio.player import AudioSink

logger = logging.getLogger(__name__)

SinkFactory = Callable[[], "AudioSink"]
WorkerFactory = Callable[[AppSettings], "DecodeWorker"]


def _default_worker_factory(settings: AppSettings) -> "DecodeWorker":
    # Imported here: analysis.decode_worker itself imports core.detection.
    from analysis.decode_worker import DecodeWorker

    return DecodeWorker(
        decoder_settings=settings.decoder,
        request_queue_size=settings.worker.request_queue_size,
        result_queue_size=settings.worker.result_queue_size,
    )


class PlaybackController:
    """
    Owns the playback position and state machine and drives the decode pipeline.

    All methods are meant to be called from the single interactive thread.
    Position changes (ticks while playing, explicit seeks) issue DecodeRequests
    tagged with a monotonically increasing generation; results come back
    through `poll_results()` and are applied only if they are not older than
    the last applied one, so a slow decode never overwrites a newer image.

    Playback position advances by wall-clock time between ticks. It is not
    read back from the audio sink, so audio and image may drift apart over
    long sessions.
    """

    def __init__(
        self,
        *,
        settings: Optional[AppSettings] = None,
        settings_store: Optional[AppSettingsStore] = None,
        sink_factory: Optional[SinkFactory] = None,
        worker_factory: Optional[WorkerFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        start_worker: bool = True,
    ) -> None:
        if settings_store is not None:
            settings = settings_store.get()
        self._settings = settings or AppSettings()
        self._settings.validate()
        self._settings_unsub: Optional[Callable[[], None]] = None
        if settings_store is not None:
            self._settings_unsub = settings_store.subscribe(self._on_settings_changed, replay=False)

        self._clock = clock
        self._sink_factory = sink_factory
        self._worker_factory = worker_factory or _default_worker_factory
        self._start_worker = start_worker

        self.metrics = PlaybackMetrics(clock)
        self.stats = DecodeStats()

        self._state: PlaybackState = UNINITIALIZED
        self._buffer: Optional[SampleBuffer] = None
        self._channel = ChannelId.LEFT
        self._params = self._settings.decoder.default_params()
        self._position = 0
        self._position_frac = 0.0
        self._last_tick: Optional[float] = None
        self._last_decode_position = 0
        self._sink: Optional["AudioSink"] = None

        self._next_generation = 0
        self._last_issued_generation = -1
        self._last_applied_generation = -1
        self._generation_floor = 0
        self._latest_result: Optional[DecodeResult] = None
        self._last_decode_error: Optional[str] = None
        self._outstanding = 0
        self._last_response = clock()

        self._next_search_id = 0
        self._pending_search: Optional[int] = None

        self._worker: Optional[DecodeWorker] = None
        self._spawn_worker()

    # ------------------------------------------------------------------
    # Read-only views for presentation / timeline collaborators
    # ------------------------------------------------------------------

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def position(self) -> int:
        return self._position

    @property
    def position_seconds(self) -> float:
        if self._buffer is None:
            return 0.0
        return self._position / float(self._buffer.sample_rate)

    @property
    def buffer(self) -> Optional[SampleBuffer]:
        return self._buffer

    @property
    def channel(self) -> ChannelId:
        return self._channel

    @property
    def params(self) -> DecoderParams:
        return self._params

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def latest_result(self) -> Optional[DecodeResult]:
        return self._latest_result

    @property
    def last_decode_error(self) -> Optional[str]:
        return self._last_decode_error

    @property
    def last_issued_generation(self) -> int:
        return self._last_issued_generation

    @property
    def last_applied_generation(self) -> int:
        return self._last_applied_generation

    @property
    def outstanding_requests(self) -> int:
        return self._outstanding

    @property
    def has_audio_output(self) -> bool:
        return self._sink is not None

    @property
    def worker(self) -> Optional[DecodeWorker]:
        return self._worker

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_file(self, path: Union[str, Path]) -> SampleBuffer:
        """
        Load a WAV file and make it the current session.

        Raises:
            LoadError: the file could not be loaded; the previous session, if
                any, is left untouched.
        """
        buffer = load_sample_buffer(path)
        self.load(buffer)
        return buffer

    def load(self, buffer: SampleBuffer) -> PlaybackState:
        """Replace the current buffer; the previous handle is released."""
        self._release_sink_stream()
        self._buffer = buffer
        self._position = 0
        self._position_frac = 0.0
        self._last_tick = None
        self._last_decode_position = 0
        self._latest_result = None
        self._last_decode_error = None
        self._pending_search = None
        # Results still in flight for the previous buffer must never apply.
        self._generation_floor = self._next_generation
        self._state = UNINITIALIZED

        if self._acquire_sink():
            self._set_state(READY)
        logger.info(
            "Loaded buffer: %d samples at %d Hz (%d channel(s)); state=%s",
            buffer.total_sample_count,
            buffer.sample_rate,
            buffer.channel_count,
            self._state,
        )
        self._issue_decode()
        return self._state

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def play(self) -> bool:
        """Ready → Playing, or Paused → Playing. Anything else is a no-op."""
        if self._state.phase is PlaybackPhase.PAUSED:
            return self.resume()
        if self._state.phase is not PlaybackPhase.READY or self._buffer is None:
            logger.warning("Cannot play from state %s", self._state)
            return False
        if self._sink is not None:
            try:
                self._sink.open(self._current_stream_view())
                self._sink.play()
            except AudioDeviceError as exc:
                self._fail_from(exc)
                return False
        self._last_tick = self._clock()
        self.metrics.record_play()
        self._set_state(PLAYING)
        logger.info("Starting playback at sample %d", self._position)
        return True

    def pause(self) -> bool:
        """Playing → Paused; the position is retained."""
        if self._state.phase is not PlaybackPhase.PLAYING:
            logger.debug("Ignoring pause in state %s", self._state)
            return False
        self._advance(self._clock())
        if not self._state.is_playing:
            # Reached the end while advancing; already stopped.
            return False
        if self._sink is not None:
            try:
                self._sink.pause()
            except AudioDeviceError as exc:
                self._fail_from(exc)
                return False
        self._last_tick = None
        self.metrics.record_pause()
        self._set_state(PAUSED)
        logger.info("Pausing playback at sample %d", self._position)
        return True

    def resume(self) -> bool:
        """Paused → Playing."""
        if self._state.phase is not PlaybackPhase.PAUSED:
            logger.debug("Ignoring resume in state %s", self._state)
            return False
        if self._sink is not None:
            try:
                self._sink.play()
            except AudioDeviceError as exc:
                self._fail_from(exc)
                return False
        elif self._sink_factory is not None and self._settings.playback.audio_enabled:
            # Audio output expected but the sink is gone.
            self.fail(AudioErrorKind.SINK_NOT_AVAILABLE)
            return False
        self._last_tick = self._clock()
        self.metrics.record_play()
        self._set_state(PLAYING)
        logger.info("Resuming playback at sample %d", self._position)
        return True

    def toggle_playback(self) -> bool:
        if self._state.is_playing:
            return self.pause()
        return self.play()

    def stop(self) -> bool:
        """Playing|Paused → Ready; the position resets to 0."""
        if self._state.phase not in (PlaybackPhase.PLAYING, PlaybackPhase.PAUSED):
            logger.debug("Ignoring stop in state %s", self._state)
            return False
        if self._state.is_playing:
            self._advance(self._clock(), allow_end=False)
        self._release_sink_stream()
        self._position = 0
        self._position_frac = 0.0
        self._last_decode_position = 0
        self._last_tick = None
        self._pending_search = None
        self.metrics.record_stop()
        self._set_state(READY)
        logger.info("Stopping playback")
        return True

    def fail(self, kind: AudioErrorKind) -> None:
        """Any state → Error(kind), e.g. on a device-driven event."""
        if self._state.is_playing:
            # Position stays where audio stopped.
            self._advance(self._clock(), allow_end=False)
        self._last_tick = None
        if self._sink is not None:
            try:
                self._sink.pause()
            except AudioDeviceError as exc:
                logger.debug("Failed to pause sink while entering error state: %s", exc)
        self.metrics.record_device_error()
        if kind is AudioErrorKind.BUFFER_UNDERRUN:
            self.metrics.record_buffer_underrun()
        self._set_state(PlaybackState.failed(kind))
        logger.warning("Playback error: %s (%s)", kind.message, kind.user_action)

    def recover(self) -> bool:
        """
        Error → Ready for recoverable errors: reacquire the sink, keep the file.

        Non-recoverable errors need a new `load()`.
        """
        if not self._state.is_error:
            return False
        kind = self._state.error
        if kind is not None and not kind.recoverable:
            logger.warning("Cannot recover from %s without reloading", kind.message)
            return False
        if self._buffer is None:
            return False
        self._close_sink()
        if not self._acquire_sink():
            return False
        self._set_state(READY)
        logger.info("Recovered from playback error")
        return True

    # ------------------------------------------------------------------
    # Seeking
    # ------------------------------------------------------------------

    def seek(self, sample_index: int) -> bool:
        """
        Move the position (allowed from Ready, Playing, Paused).

        The target is clamped to [0, total_sample_count]; a target at or past
        the end yields an empty decode window. While playing or paused, the
        audio source moves to the new offset and the state is unchanged.
        """
        if not self._state.can_seek or self._buffer is None:
            logger.debug("Ignoring seek in state %s", self._state)
            return False
        total = self._buffer.total_sample_count
        self._position = min(max(0, int(sample_index)), total)
        self._position_frac = 0.0
        self._pending_search = None
        self.metrics.record_seek()
        if self._state.is_playing:
            now = self._clock()
            if self._last_tick is not None:
                self.metrics.add_playback_time(max(0.0, now - self._last_tick))
            self._last_tick = now
        self._reopen_stream()
        self._issue_decode()
        return True

    def seek_to_next_sync(self) -> bool:
        """
        Ask the worker for the next sync onset after the current position.

        The seek happens in `poll_results()` when the answer arrives, unless
        another seek, stop, or load happened in between.
        """
        if not self._state.can_seek or self._buffer is None or self._worker is None:
            return False
        self._next_search_id += 1
        search_id = self._next_search_id
        request = SyncSearchRequest(
            search_id=search_id,
            view=self._buffer.view_to_end(self._channel, self._position),
            after=self._position,
            sample_rate=self._buffer.sample_rate,
        )
        self._pending_search = search_id
        self._worker.submit(request)
        return True

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def set_params(self, params: DecoderParams) -> None:
        self._params = params
        self._issue_decode()

    def set_channel(self, channel: ChannelId) -> None:
        channel = ChannelId(channel)
        if channel is self._channel:
            return
        self._channel = channel
        self._reopen_stream()
        self._issue_decode()

    def reset_session(self) -> None:
        """Clear playback metrics and decode statistics."""
        self.metrics.reset()
        self.stats = DecodeStats()

    # ------------------------------------------------------------------
    # Interactive loop
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> None:
        """One step of the interactive loop: health check, results, position."""
        now = self._clock() if now is None else now
        self._check_worker_health(now)
        self.poll_results(now)
        if self._state.is_playing:
            self._advance(now)

    def poll_results(self, now: Optional[float] = None) -> int:
        """Apply every result the worker has produced; never blocks."""
        if self._worker is None:
            return 0
        dropped = self._worker.take_dropped_requests()
        if dropped:
            self.stats.record_dropped_request(dropped)
            self._outstanding = max(0, self._outstanding - dropped)
        lost = self._worker.take_dropped_results()
        if lost:
            self.stats.record_dropped_result(lost)
            self._outstanding = max(0, self._outstanding - lost)
        applied = 0
        for result in self._worker.poll():
            self._last_response = self._clock() if now is None else now
            if isinstance(result, DecodeResult):
                if self.apply_result(result):
                    applied += 1
            elif isinstance(result, SyncSearchResult):
                self._apply_search(result)
        return applied

    def apply_result(self, result: DecodeResult) -> bool:
        """
        Reconcile one DecodeResult. Returns True if it became the displayed one.

        Results older than the last applied generation (or issued before the
        current buffer was loaded) are discarded.
        """
        self._outstanding = max(0, self._outstanding - 1)
        self.stats.record_result(result.decode_duration, result.pixels.size, result.ok)

        generation = result.generation
        stale = generation < self._generation_floor or generation < self._last_applied_generation
        if self._settings.worker.discard_superseded and generation != self._last_issued_generation:
            stale = True
        if stale:
            self.stats.record_stale()
            logger.debug(
                "Discarding stale result %d (last applied %d, last issued %d)",
                generation,
                self._last_applied_generation,
                self._last_issued_generation,
            )
            return False

        self._last_applied_generation = generation
        if not result.ok:
            self._last_decode_error = result.error
            logger.warning("Decode failed for request %d: %s", generation, result.error)
            return False
        self._last_decode_error = None
        self._latest_result = result
        return True

    def _apply_search(self, result: SyncSearchResult) -> None:
        if result.search_id != self._pending_search:
            logger.debug("Discarding superseded sync search %d", result.search_id)
            return
        self._pending_search = None
        if result.error is not None:
            logger.warning("Sync search failed: %s", result.error)
            return
        if result.position is None:
            logger.info("No more sync signals found")
            return
        logger.info("Seeking to next sync at sample %d", result.position)
        self.seek(result.position)

    def shutdown(self) -> None:
        self._close_sink()
        if self._worker is not None:
            self._worker.stop()
            self._worker = None
        if self._settings_unsub is not None:
            self._settings_unsub()
            self._settings_unsub = None
        logger.info("%s", self.metrics.summary())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, state: PlaybackState) -> None:
        if state != self._state:
            logger.debug("Playback state %s -> %s", self._state, state)
        self._state = state
        self.metrics.mark_state_change()

    def _fail_from(self, exc: AudioDeviceError) -> None:
        logger.error("Audio device error: %s", exc)
        self.fail(exc.kind)

    def _acquire_sink(self) -> bool:
        """Obtain the output sink if audio is wanted; False means Error state."""
        if self._sink is not None or self._sink_factory is None:
            return True
        if not self._settings.playback.audio_enabled:
            return True
        try:
            self._sink = self._sink_factory()
        except AudioDeviceError as exc:
            self._fail_from(exc)
            return False
        self.metrics.last_device_name = getattr(self._sink, "device_name", "Unknown")
        return True

    def _release_sink_stream(self) -> None:
        if self._sink is None:
            return
        try:
            self._sink.stop()
        except AudioDeviceError as exc:
            logger.debug("Failed to stop sink: %s", exc)

    def _close_sink(self) -> None:
        if self._sink is None:
            return
        try:
            self._sink.close()
        except AudioDeviceError as exc:
            logger.debug("Failed to close sink: %s", exc)
        self._sink = None

    def _current_stream_view(self) -> BufferView:
        assert self._buffer is not None
        return self._buffer.view_to_end(self._channel, self._position)

    def _reopen_stream(self) -> None:
        """Point the sink at the current position and channel; a paused sink stays paused."""
        if self._sink is None or self._state.phase not in (PlaybackPhase.PLAYING, PlaybackPhase.PAUSED):
            return
        try:
            self._sink.open(self._current_stream_view())
            if self._state.is_playing:
                self._sink.play()
        except AudioDeviceError as exc:
            self._fail_from(exc)

    def _advance(self, now: float, *, allow_end: bool = True) -> None:
        if self._last_tick is None or self._buffer is None:
            self._last_tick = now
            return
        elapsed = max(0.0, now - self._last_tick)
        self._last_tick = now
        self.metrics.add_playback_time(elapsed)

        exact = elapsed * self._buffer.sample_rate + self._position_frac
        step = int(exact)
        self._position_frac = exact - step
        new_position = self._position + step
        total = self._buffer.total_sample_count
        if new_position >= total:
            if allow_end:
                logger.info("Reached end of audio")
                self.stop()
                return
            new_position = total
        self._position = new_position

        interval = int(self._settings.decoder.decode_interval_secs * self._buffer.sample_rate)
        if abs(new_position - self._last_decode_position) >= interval:
            self._issue_decode()

    def _issue_decode(self) -> Optional[int]:
        if self._buffer is None or self._worker is None:
            return None
        window = int(self._settings.decoder.decode_window_secs * self._buffer.sample_rate)
        view = self._buffer.view(self._channel, self._position, window)
        generation = self._next_generation
        self._next_generation += 1
        request = DecodeRequest(
            generation=generation,
            view=view,
            params=self._params,
            sample_rate=self._buffer.sample_rate,
        )
        if self._outstanding == 0:
            self._last_response = self._clock()
        self._outstanding += 1
        self._last_issued_generation = generation
        self._last_decode_position = self._position
        self.stats.record_request()
        self._worker.submit(request)
        return generation

    def _spawn_worker(self) -> None:
        self._worker = self._worker_factory(self._settings)
        if self._start_worker:
            self._worker.start()
        self._outstanding = 0
        self._last_response = self._clock()

    def restart_worker(self) -> None:
        """Replace the worker; requests pending in the old one are lost."""
        old = self._worker
        logger.warning("Restarting decode worker")
        if old is not None:
            old.stop(timeout=0.0)
        self._pending_search = None
        self._spawn_worker()
        self.stats.record_worker_restart()

    def _check_worker_health(self, now: float) -> None:
        if self._worker is None or not self._start_worker:
            return
        worker_settings = self._settings.worker
        if not worker_settings.auto_restart:
            return
        if not self._worker.is_alive():
            logger.error("Decode worker has exited")
            self.restart_worker()
            return
        if self._outstanding and now - self._last_response > worker_settings.max_unresponsive_ms / 1000.0:
            logger.warning(
                "Decode worker unresponsive for %.0f ms with %d request(s) outstanding",
                (now - self._last_response) * 1000.0,
                self._outstanding,
            )
            self.restart_worker()

    def _on_settings_changed(self, settings: AppSettings) -> None:
        self._settings = settings


__all__ = ["PlaybackController"]
