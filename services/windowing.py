"""Tumbling window assignment and the watermark-driven firing rule."""

from __future__ import annotations

from typing import Optional

from models.records import Window


class TumblingWindowAssigner:
    def __init__(self, size_ms: int) -> None:
        if size_ms <= 0:
            raise ValueError("Window size must be positive.")
        self.size_ms = size_ms

    @classmethod
    def of_minutes(cls, minutes: int) -> TumblingWindowAssigner:
        return cls(minutes * 60_000)

    def window_start(self, event_time_ms: int) -> int:
        # floor division keeps pre-epoch instants in the right window
        return (event_time_ms // self.size_ms) * self.size_ms

    def assign(self, event_time_ms: int) -> Window:
        start = self.window_start(event_time_ms)
        return Window(start_ms=start, end_ms=start + self.size_ms)


class WatermarkTrigger:
    """A window fires once the watermark reaches its end boundary."""

    def should_fire(self, window: Window, watermark: Optional[int]) -> bool:
        return watermark is not None and watermark >= window.end_ms

    def is_late(self, window: Window, watermark: Optional[int]) -> bool:
        """True when ``window`` is already closed at admission time."""
        return self.should_fire(window, watermark)
