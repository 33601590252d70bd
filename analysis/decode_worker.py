from __future__ import annotations

import logging
import queue
import threading
import time
from typing import List, Optional, Union

from core.detection import SyncDetector
from shared.app_settings import DecoderSettings
from shared.models import (
    DecodeRequest,
    DecodeResult,
    EndOfStream,
    SyncSearchRequest,
    SyncSearchResult,
)

from .line_decoder import LineDecoder

logger = logging.getLogger(__name__)

WorkerRequest = Union[DecodeRequest, SyncSearchRequest]
WorkerResult = Union[DecodeResult, SyncSearchResult]


def _put_drop_oldest(q: "queue.Queue", item) -> int:
    """Put without blocking, evicting the oldest entry when full. Returns evictions."""
    try:
        q.put_nowait(item)
        return 0
    except queue.Full:
        pass
    evicted = 0
    try:
        q.get_nowait()
        evicted = 1
    except queue.Empty:
        pass
    try:
        q.put_nowait(item)
    except queue.Full:
        # Another producer refilled the slot; the new item is the one lost.
        evicted += 1
    return evicted


class DecodeWorker(threading.Thread):
    """
    Background thread that turns DecodeRequests into DecodeResults.

    The worker owns its SyncDetector and LineDecoder; every request is a pure
    computation over an immutable SampleBuffer view, so nothing is shared
    mutably with the controller. Both queues are bounded and drop the oldest
    entry on overflow; only the newest work matters to the consumer.
    """

    def __init__(
        self,
        *,
        decoder_settings: Optional[DecoderSettings] = None,
        request_queue_size: int = 8,
        result_queue_size: int = 8,
        line_decoder: Optional[LineDecoder] = None,
        sync_detector: Optional[SyncDetector] = None,
        name: str = "DecodeWorker",
    ) -> None:
        super().__init__(name=name, daemon=True)
        settings = decoder_settings or DecoderSettings()
        self.input_queue: "queue.Queue[WorkerRequest | object]" = queue.Queue(maxsize=request_queue_size)
        self.output_queue: "queue.Queue[WorkerResult]" = queue.Queue(maxsize=result_queue_size)
        self._stop_evt = threading.Event()
        self._decoder = line_decoder or LineDecoder()
        self._detector = sync_detector or SyncDetector(
            target_freq_hz=settings.target_sync_freq_hz,
            chunk_size=settings.fft_chunk_size,
            threshold_multiplier=settings.sync_threshold_multiplier,
            min_spacing_ms=settings.sync_min_spacing_ms,
        )
        self._detect_sync = bool(settings.detect_sync_in_window)
        self._counter_lock = threading.Lock()
        self._dropped_requests = 0
        self._dropped_results = 0
        self.processed = 0

    # ---- Controller-facing API (never blocks) --------------------------------

    def submit(self, request: WorkerRequest) -> bool:
        """Enqueue `request`; returns False if an older request was evicted."""
        evicted = _put_drop_oldest(self.input_queue, request)
        if evicted:
            with self._counter_lock:
                self._dropped_requests += evicted
            logger.debug("Decode request queue full; evicted %d pending request(s)", evicted)
        return evicted == 0

    def poll(self) -> List[WorkerResult]:
        """Drain every result currently available without blocking."""
        results: List[WorkerResult] = []
        while True:
            try:
                results.append(self.output_queue.get_nowait())
            except queue.Empty:
                break
        return results

    def take_dropped_requests(self) -> int:
        with self._counter_lock:
            dropped = self._dropped_requests
            self._dropped_requests = 0
        return dropped

    def take_dropped_results(self) -> int:
        with self._counter_lock:
            dropped = self._dropped_results
            self._dropped_results = 0
        return dropped

    @property
    def pending(self) -> int:
        return self.input_queue.qsize()

    # ---- Thread body ----------------------------------------------------------

    def run(self) -> None:  # type: ignore[override]
        logger.info("Decode worker thread started")
        while not self._stop_evt.is_set():
            try:
                item = self.input_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is EndOfStream:
                break
            try:
                result = self.process(item)
            except Exception as exc:
                # process() reports request errors as results; anything else lands here.
                logger.exception("Unhandled error processing %r", item)
                result = self._unhandled(item, exc)
            if result is None:
                continue
            self.processed += 1
            self.deliver(result)
        logger.info("Decode worker thread exiting")

    def deliver(self, result: WorkerResult) -> None:
        """Publish `result`, counting any evicted older results as dropped."""
        evicted = _put_drop_oldest(self.output_queue, result)
        if evicted:
            logger.debug("Decode result queue full; evicted %d result(s)", evicted)
            with self._counter_lock:
                self._dropped_results += evicted

    def process(self, item: object) -> Optional[WorkerResult]:
        """Handle one request; failures become error results, never exceptions."""
        if isinstance(item, DecodeRequest):
            return self._decode(item)
        if isinstance(item, SyncSearchRequest):
            return self._search(item)
        logger.debug("Ignoring unknown work item: %r", item)
        return None

    def _decode(self, request: DecodeRequest) -> DecodeResult:
        start = time.perf_counter()
        view = request.view
        try:
            pixels = self._decoder.decode(view, request.params, request.sample_rate)
            sync_positions = self._detector.find(view) if self._detect_sync else []
            result = DecodeResult(
                generation=request.generation,
                start_sample=view.offset,
                pixels=pixels,
                mode=request.params.mode,
                sync_positions=tuple(sync_positions),
                decode_duration=time.perf_counter() - start,
            )
        except Exception as exc:
            logger.exception("Decode failed for request %d", request.generation)
            return DecodeResult.failed(
                request.generation,
                view.offset,
                request.params.mode,
                str(exc) or exc.__class__.__name__,
                decode_duration=time.perf_counter() - start,
            )
        logger.debug(
            "Decoded request %d: %d rows in %.1f ms",
            request.generation,
            result.height,
            result.decode_duration * 1000.0,
        )
        return result

    @staticmethod
    def _unhandled(item: object, exc: Exception) -> Optional[WorkerResult]:
        """Error result for a request whose processing raised, so it is still answered."""
        message = str(exc) or exc.__class__.__name__
        if isinstance(item, DecodeRequest):
            return DecodeResult.failed(item.generation, item.view.offset, item.params.mode, message)
        if isinstance(item, SyncSearchRequest):
            return SyncSearchResult(item.search_id, None, message)
        return None

    def _search(self, request: SyncSearchRequest) -> SyncSearchResult:
        try:
            position = self._detector.find_next(request.view, request.after)
        except Exception as exc:
            logger.exception("Sync search %d failed", request.search_id)
            return SyncSearchResult(request.search_id, None, str(exc) or exc.__class__.__name__)
        return SyncSearchResult(request.search_id, position)

    def stop(self, timeout: float = 1.0) -> None:
        self._stop_evt.set()
        _put_drop_oldest(self.input_queue, EndOfStream)
        if self.is_alive():
            self.join(timeout=timeout)


__all__ = ["DecodeWorker", "WorkerRequest", "WorkerResult"]
