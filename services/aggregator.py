"""Incremental aggregation of sensor readings within one window."""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from models.records import SensorMetadata, SensorReading

MEASUREMENTS = ("temperature", "humidity", "pressure", "battery_level")


@dataclass
class MeasurementStats:
    """Running sum/min/max for one measurement."""

    sum: float = 0.0
    min: float = math.inf
    max: float = -math.inf

    def add(self, value: float) -> None:
        self.sum += value
        if value < self.min:
            self.min = value
        if value > self.max:
            self.max = value

    def combined(self, other: MeasurementStats) -> MeasurementStats:
        return MeasurementStats(
            sum=self.sum + other.sum,
            min=min(self.min, other.min),
            max=max(self.max, other.max),
        )


@dataclass
class SensorAccumulator:
    """Partial aggregate for one sensor within one window.

    While ``count`` is zero the stats hold their identity values and must not
    be read as results.
    """

    count: int = 0
    sensor_id: Optional[str] = None
    sensor_type: Optional[str] = None
    location: Optional[str] = None
    metadata: Optional[SensorMetadata] = None
    temperature: MeasurementStats = field(default_factory=MeasurementStats)
    humidity: MeasurementStats = field(default_factory=MeasurementStats)
    pressure: MeasurementStats = field(default_factory=MeasurementStats)
    battery_level: MeasurementStats = field(default_factory=MeasurementStats)
    latest_event_time: Optional[datetime] = None
    latest_status: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    def stats(self, measurement: str) -> MeasurementStats:
        return getattr(self, measurement)

    def average(self, measurement: str) -> float:
        if self.count == 0:
            raise ValueError("Average is undefined for an empty accumulator.")
        return self.stats(measurement).sum / self.count


class Aggregator:
    """Fold and merge operations over :class:`SensorAccumulator` values."""

    def create_accumulator(self) -> SensorAccumulator:
        return SensorAccumulator()

    def fold(self, accumulator: SensorAccumulator, reading: SensorReading) -> SensorAccumulator:
        """Fold ``reading`` into ``accumulator`` in place and return it."""
        if accumulator.count == 0:
            accumulator.sensor_id = reading.sensor_id
            accumulator.sensor_type = reading.sensor_type
            accumulator.location = reading.location
            accumulator.metadata = reading.metadata

        accumulator.count += 1
        for name in MEASUREMENTS:
            accumulator.stats(name).add(getattr(reading, name))

        latest = accumulator.latest_event_time
        if latest is None or reading.event_time > latest:
            accumulator.latest_event_time = reading.event_time
            accumulator.latest_status = reading.status
        return accumulator

    def merge(self, a: SensorAccumulator, b: SensorAccumulator) -> SensorAccumulator:
        """Combine two partial accumulators without mutating either.

        An empty side is the identity; a copy of the other side is returned.
        The identity snapshot comes from ``a``; the latest status comes from the
        side with the later event time, ``a`` winning exact ties.
        """
        if a.count == 0:
            return copy.deepcopy(b)
        if b.count == 0:
            return copy.deepcopy(a)

        result = SensorAccumulator(
            count=a.count + b.count,
            sensor_id=a.sensor_id,
            sensor_type=a.sensor_type,
            location=a.location,
            metadata=a.metadata,
        )
        for name in MEASUREMENTS:
            setattr(result, name, a.stats(name).combined(b.stats(name)))

        if a.latest_event_time is not None and (
            b.latest_event_time is None or a.latest_event_time >= b.latest_event_time
        ):
            result.latest_event_time = a.latest_event_time
            result.latest_status = a.latest_status
        else:
            result.latest_event_time = b.latest_event_time
            result.latest_status = b.latest_status
        return result

    def aggregate(self, readings: Iterable[SensorReading]) -> SensorAccumulator:
        accumulator = self.create_accumulator()
        for reading in readings:
            self.fold(accumulator, reading)
        return accumulator


_default_aggregator = Aggregator()


def fold(accumulator: SensorAccumulator, reading: SensorReading) -> SensorAccumulator:
    return _default_aggregator.fold(accumulator, reading)


def merge(a: SensorAccumulator, b: SensorAccumulator) -> SensorAccumulator:
    return _default_aggregator.merge(a, b)
