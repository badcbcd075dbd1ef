"""Helpers for reporting de-identification progress."""

from __future__ import annotations

import threading
from typing import Callable, Optional


class ProgressTracker:
    """Convert record-level progress callbacks into percentage updates.

    The aggregator reports ``(done, total)`` from several unit threads, so
    updates are serialized and only changed percentages are emitted. 100 is
    reserved for completion.
    """

    def __init__(self, send: Callable[[int], None]) -> None:
        self._send = send
        self._lock = threading.Lock()
        self._total: Optional[int] = None
        self._done = 0
        self._last_percent: Optional[int] = None

    @property
    def total_records(self) -> int:
        return self._total or 0

    @property
    def done_records(self) -> int:
        return self._done

    def update(self, done: int, total: int) -> None:
        with self._lock:
            if self._total is None or total > self._total:
                self._total = total
            self._done = max(self._done, done)

            total_records = self._total or 0
            if total_records <= 0:
                percent = 100
            else:
                percent_raw = int((self._done * 100) / total_records)
                if self._done < total_records:
                    percent = min(max(percent_raw, 0), 99)
                else:
                    percent = 100

            if percent == self._last_percent:
                return
            self._last_percent = percent
            self._send(percent)

    def finalize(self) -> None:
        with self._lock:
            if self._last_percent != 100:
                self._send(100)
                self._last_percent = 100
