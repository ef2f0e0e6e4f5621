"""Turning fired accumulators into :class:`SensorAggregate` records."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from app.schemas import SensorAggregate, SensorMetadataSchema
from models.records import Window
from services.aggregator import SensorAccumulator

logger = logging.getLogger(__name__)


class AggregateSink(Protocol):
    def put_item(self, item: SensorAggregate) -> None: ...


def build_aggregate(
    sensor_id: str, window: Window, accumulator: SensorAccumulator
) -> SensorAggregate:
    if accumulator.is_empty:
        raise ValueError("Cannot build an aggregate from an empty accumulator.")

    metadata = accumulator.metadata
    return SensorAggregate(
        sensor_id=sensor_id,
        sensor_type=accumulator.sensor_type,
        location=accumulator.location,
        window_start=window.start,
        window_end=window.end,
        count=accumulator.count,
        avg_temperature=accumulator.average("temperature"),
        min_temperature=accumulator.temperature.min,
        max_temperature=accumulator.temperature.max,
        avg_humidity=accumulator.average("humidity"),
        min_humidity=accumulator.humidity.min,
        max_humidity=accumulator.humidity.max,
        avg_pressure=accumulator.average("pressure"),
        min_pressure=accumulator.pressure.min,
        max_pressure=accumulator.pressure.max,
        avg_battery_level=accumulator.average("battery_level"),
        min_battery_level=accumulator.battery_level.min,
        max_battery_level=accumulator.battery_level.max,
        latest_status=accumulator.latest_status,
        latest_event_time=accumulator.latest_event_time,
        metadata=(
            SensorMetadataSchema(
                manufacturer=metadata.manufacturer,
                model=metadata.model,
                firmware=metadata.firmware,
                latitude=metadata.latitude,
                longitude=metadata.longitude,
            )
            if metadata is not None
            else SensorMetadataSchema()
        ),
    )


class ResultEmitter:
    """Single exit point for aggregates: build, hand to the sink, count."""

    def __init__(self, sink: AggregateSink) -> None:
        self.sink = sink
        self.emitted = 0
        self.suppressed = 0

    def emit(
        self, sensor_id: str, window: Window, accumulator: SensorAccumulator
    ) -> Optional[SensorAggregate]:
        if accumulator.is_empty:
            self.suppressed += 1
            logger.debug(
                "Suppressing empty window",
                extra={
                    "sensor_id": sensor_id,
                    "window_start": window.start.isoformat(),
                    "window_end": window.end.isoformat(),
                },
            )
            return None

        aggregate = build_aggregate(sensor_id, window, accumulator)
        self.sink.put_item(aggregate)
        self.emitted += 1
        logger.debug(
            "Emitted aggregate",
            extra={
                "sensor_id": sensor_id,
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "record_count": accumulator.count,
            },
        )
        return aggregate
