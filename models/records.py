"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(instant: datetime) -> int:
    """Milliseconds since the epoch for an aware datetime."""
    delta = instant - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_epoch_ms(millis: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=millis)


def truncate_to_millis(instant: datetime) -> datetime:
    return instant.replace(microsecond=instant.microsecond // 1000 * 1000)


@dataclass(frozen=True, slots=True)
class NativeInstant:
    """Timezone-aware datetime handed over as-is by the source."""

    value: datetime

    def to_instant(self) -> datetime:
        return truncate_to_millis(self.value.astimezone(timezone.utc))


@dataclass(frozen=True, slots=True)
class PackedTimestamp:
    """Epoch milliseconds plus a sub-millisecond nanosecond part."""

    millisecond: int
    nano_of_millisecond: int = 0

    def to_instant(self) -> datetime:
        # nanoseconds below a millisecond are dropped
        return from_epoch_ms(self.millisecond)


@dataclass(frozen=True, slots=True)
class LegacyDateTime:
    """Naive datetime; interpreted as UTC."""

    value: datetime

    def to_instant(self) -> datetime:
        return truncate_to_millis(self.value.replace(tzinfo=timezone.utc))


TimestampVariant = Union[NativeInstant, PackedTimestamp, LegacyDateTime]


@dataclass(frozen=True, slots=True)
class SensorMetadata:
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware: Optional[str] = None
    latitude: float = 0.0
    longitude: float = 0.0


@dataclass(frozen=True, slots=True)
class SensorReading:
    """A single decoded sensor reading."""

    sensor_id: Optional[str]
    sensor_type: Optional[str]
    location: Optional[str]
    temperature: float
    humidity: float
    pressure: float
    battery_level: float
    status: Optional[str]
    event_time: datetime
    metadata: SensorMetadata = field(default_factory=SensorMetadata)

    @property
    def event_time_ms(self) -> int:
        return to_epoch_ms(self.event_time)


@dataclass(frozen=True, slots=True)
class Window:
    """Half-open event-time interval ``[start_ms, end_ms)``."""

    start_ms: int
    end_ms: int

    @property
    def start(self) -> datetime:
        return from_epoch_ms(self.start_ms)

    @property
    def end(self) -> datetime:
        return from_epoch_ms(self.end_ms)

    def contains(self, event_time_ms: int) -> bool:
        return self.start_ms <= event_time_ms < self.end_ms
