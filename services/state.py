"""Keyed window state: one accumulator per (sensor, window)."""

from __future__ import annotations

import heapq
from typing import Dict, Iterator, List, Optional, Tuple

from models.records import Window
from services.aggregator import Aggregator, SensorAccumulator

StateKey = Tuple[str, int]
FiredEntry = Tuple[str, Window, SensorAccumulator]


class AccumulatorStore:
    """Explicit mapping from ``(sensor_id, window_start_ms)`` to accumulators.

    Entries are inserted on first use and removed when their window fires.
    Open window starts are kept in a heap so expired windows come out in
    increasing start order.
    """

    def __init__(self, aggregator: Optional[Aggregator] = None) -> None:
        self.aggregator = aggregator or Aggregator()
        self._windows: Dict[int, Window] = {}
        self._entries: Dict[int, Dict[str, SensorAccumulator]] = {}
        self._starts: List[int] = []

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        sensor_id, start_ms = key
        return sensor_id in self._entries.get(start_ms, {})

    def __iter__(self) -> Iterator[StateKey]:
        for start_ms in sorted(self._entries):
            for sensor_id in sorted(self._entries[start_ms]):
                yield sensor_id, start_ms

    @property
    def open_windows(self) -> List[Window]:
        return [self._windows[start] for start in sorted(self._entries)]

    def get(self, sensor_id: str, window: Window) -> Optional[SensorAccumulator]:
        return self._entries.get(window.start_ms, {}).get(sensor_id)

    def get_or_create(self, sensor_id: str, window: Window) -> SensorAccumulator:
        entries = self._entries.get(window.start_ms)
        if entries is None:
            entries = self._entries[window.start_ms] = {}
            self._windows[window.start_ms] = window
            heapq.heappush(self._starts, window.start_ms)
        accumulator = entries.get(sensor_id)
        if accumulator is None:
            accumulator = entries[sensor_id] = self.aggregator.create_accumulator()
        return accumulator

    def put(self, sensor_id: str, window: Window, accumulator: SensorAccumulator) -> None:
        self.get_or_create(sensor_id, window)
        self._entries[window.start_ms][sensor_id] = accumulator

    def merge_partial(
        self, sensor_id: str, window: Window, partial: SensorAccumulator
    ) -> SensorAccumulator:
        """Combine a pre-aggregated partial accumulator into the stored one."""
        current = self.get_or_create(sensor_id, window)
        merged = self.aggregator.merge(current, partial)
        self._entries[window.start_ms][sensor_id] = merged
        return merged

    def absorb(self, other: AccumulatorStore) -> None:
        """Move every entry of ``other`` into this store, merging on collisions."""
        for sensor_id, window, accumulator in other.drain():
            self.merge_partial(sensor_id, window, accumulator)

    def pop_expired(self, watermark: Optional[int]) -> List[FiredEntry]:
        fired: List[FiredEntry] = []
        if watermark is None:
            return fired
        while self._starts and self._windows[self._starts[0]].end_ms <= watermark:
            fired.extend(self._pop_window(heapq.heappop(self._starts)))
        return fired

    def drain(self) -> List[FiredEntry]:
        fired: List[FiredEntry] = []
        while self._starts:
            fired.extend(self._pop_window(heapq.heappop(self._starts)))
        return fired

    def _pop_window(self, start_ms: int) -> List[FiredEntry]:
        window = self._windows.pop(start_ms)
        entries = self._entries.pop(start_ms)
        return [(sensor_id, window, entries[sensor_id]) for sensor_id in sorted(entries)]
