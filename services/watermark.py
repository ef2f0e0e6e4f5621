"""Event-time watermarks under bounded out-of-orderness."""

from __future__ import annotations

from typing import Iterable, Optional


class WatermarkGenerator:
    """Tracks the highest event time seen and publishes ``max_seen - delay``.

    The watermark is recomputed synchronously on every observation and never
    moves backwards, even when readings arrive out of order.
    """

    def __init__(self, bounded_delay_ms: int) -> None:
        if bounded_delay_ms < 0:
            raise ValueError("bounded_delay_ms must be non-negative.")
        self.bounded_delay_ms = bounded_delay_ms
        self._max_seen: Optional[int] = None
        self._watermark: Optional[int] = None

    @property
    def max_seen(self) -> Optional[int]:
        return self._max_seen

    @property
    def watermark(self) -> Optional[int]:
        return self._watermark

    def observe(self, event_time_ms: int) -> Optional[int]:
        if self._max_seen is None or event_time_ms > self._max_seen:
            self._max_seen = event_time_ms
        self.advance_to(self._max_seen - self.bounded_delay_ms)
        return self._watermark

    def advance_to(self, watermark_ms: int) -> Optional[int]:
        if self._watermark is None or watermark_ms > self._watermark:
            self._watermark = watermark_ms
        return self._watermark


def combine_watermarks(watermarks: Iterable[Optional[int]]) -> Optional[int]:
    """Minimum over the partitions that have produced a watermark."""
    known = [w for w in watermarks if w is not None]
    return min(known) if known else None
