"""The sequential per-partition pipeline: watermark, fold, fire, emit."""

from __future__ import annotations

import logging
from typing import List, Optional

from app.schemas import SensorAggregate
from models.records import SensorReading, Window, from_epoch_ms
from services.aggregator import Aggregator
from services.emitter import ResultEmitter
from services.state import AccumulatorStore, FiredEntry
from services.watermark import WatermarkGenerator
from services.windowing import TumblingWindowAssigner, WatermarkTrigger

logger = logging.getLogger(__name__)


class PartitionPipeline:
    """Owns the watermark and window state for one partition of sensor keys.

    Not thread-safe: a partition processes one reading at a time.
    """

    def __init__(
        self,
        partition_id: int,
        assigner: TumblingWindowAssigner,
        emitter: ResultEmitter,
        bounded_delay_ms: int,
        aggregator: Optional[Aggregator] = None,
        trigger: Optional[WatermarkTrigger] = None,
    ) -> None:
        self.partition_id = partition_id
        self.assigner = assigner
        self.emitter = emitter
        self.aggregator = aggregator or Aggregator()
        self.trigger = trigger or WatermarkTrigger()
        self.watermarks = WatermarkGenerator(bounded_delay_ms)
        self.store = AccumulatorStore(self.aggregator)
        self.processed = 0
        self.late = 0

    @property
    def watermark(self) -> Optional[int]:
        return self.watermarks.watermark

    @property
    def open_windows(self) -> List[Window]:
        return self.store.open_windows

    def process(self, reading: SensorReading) -> List[SensorAggregate]:
        if reading.sensor_id is None:
            raise ValueError("Reading has no sensor_id to key on.")

        event_time_ms = reading.event_time_ms
        watermark = self.watermarks.observe(event_time_ms)
        window = self.assigner.assign(event_time_ms)
        self.processed += 1

        if self.trigger.is_late(window, watermark):
            self.late += 1
            logger.warning(
                "Dropping reading for a window that already closed",
                extra={
                    "partition": self.partition_id,
                    "sensor_id": reading.sensor_id,
                    "window_start": window.start.isoformat(),
                    "watermark": from_epoch_ms(watermark).isoformat(),
                    "reason": "late",
                },
            )
            return []

        accumulator = self.store.get_or_create(reading.sensor_id, window)
        self.aggregator.fold(accumulator, reading)
        return self._emit(self.store.pop_expired(watermark))

    def advance_watermark(self, watermark_ms: int) -> List[SensorAggregate]:
        """Apply an external watermark signal and fire what it closes."""
        watermark = self.watermarks.advance_to(watermark_ms)
        return self._emit(self.store.pop_expired(watermark))

    def flush(self) -> List[SensorAggregate]:
        """Fire every open window regardless of the watermark."""
        fired = self.store.drain()
        if fired:
            logger.info(
                "Flushing open windows",
                extra={"partition": self.partition_id, "record_count": len(fired)},
            )
        return self._emit(fired)

    def _emit(self, fired: List[FiredEntry]) -> List[SensorAggregate]:
        emitted: List[SensorAggregate] = []
        for sensor_id, window, accumulator in fired:
            aggregate = self.emitter.emit(sensor_id, window, accumulator)
            if aggregate is not None:
                emitted.append(aggregate)
        return emitted
