"""Decode pipeline statistics: counters plus a bounded latency history."""
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict

import numpy as np


class DecodeStats:
    """
    Running decode statistics for the controller side of the pipeline.

    Latency percentiles are computed over the most recent `history` decodes
    so long sessions stay bounded in memory.
    """

    def __init__(self, history: int = 1024) -> None:
        if history <= 0:
            raise ValueError("history must be positive")
        self._lock = threading.Lock()
        self._latencies_ms: Deque[float] = deque(maxlen=history)
        self.requests = 0
        self.results = 0
        self.successes = 0
        self.failures = 0
        self.stale_discarded = 0
        self.requests_dropped = 0
        self.results_dropped = 0
        self.total_pixels = 0
        self.worker_restarts = 0

    def record_request(self) -> None:
        with self._lock:
            self.requests += 1

    def record_dropped_request(self, count: int = 1) -> None:
        with self._lock:
            self.requests_dropped += int(count)

    def record_dropped_result(self, count: int = 1) -> None:
        with self._lock:
            self.results_dropped += int(count)

    def record_result(self, duration_s: float, pixels: int, success: bool) -> None:
        with self._lock:
            self.results += 1
            self._latencies_ms.append(max(0.0, float(duration_s)) * 1000.0)
            if success:
                self.successes += 1
                self.total_pixels += int(pixels)
            else:
                self.failures += 1

    def record_stale(self) -> None:
        with self._lock:
            self.stale_discarded += 1

    def record_worker_restart(self) -> None:
        with self._lock:
            self.worker_restarts += 1

    def latency_percentile(self, q: float) -> float:
        with self._lock:
            if not self._latencies_ms:
                return 0.0
            data = np.fromiter(self._latencies_ms, dtype=np.float64)
        return float(np.percentile(data, q))

    @property
    def success_rate(self) -> float:
        with self._lock:
            if self.results == 0:
                return 0.0
            return self.successes / float(self.results)

    def snapshot(self) -> Dict[str, object]:
        snap: Dict[str, object] = {
            "decode_p50_ms": self.latency_percentile(50.0),
            "decode_p95_ms": self.latency_percentile(95.0),
            "decode_p99_ms": self.latency_percentile(99.0),
            "success_rate": self.success_rate,
        }
        with self._lock:
            snap.update(
                {
                    "requests": self.requests,
                    "results": self.results,
                    "successes": self.successes,
                    "failures": self.failures,
                    "stale_discarded": self.stale_discarded,
                    "requests_dropped": self.requests_dropped,
                    "results_dropped": self.results_dropped,
                    "total_pixels": self.total_pixels,
                    "worker_restarts": self.worker_restarts,
                }
            )
        return snap


__all__ = ["DecodeStats"]
