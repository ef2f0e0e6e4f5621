"""Decoding of positional source rows into :class:`SensorReading` values."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from models.records import (
    LegacyDateTime,
    NativeInstant,
    PackedTimestamp,
    SensorMetadata,
    SensorReading,
    TimestampVariant,
)

FIELD_NAMES = (
    "sensor_id",
    "sensor_type",
    "location",
    "temperature",
    "humidity",
    "pressure",
    "battery_level",
    "status",
    "event_time",
    "manufacturer",
    "model",
    "firmware",
    "latitude",
    "longitude",
)

_EVENT_TIME_INDEX = FIELD_NAMES.index("event_time")


class DecodeError(ValueError):
    """A source row could not be turned into a reading."""

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


def _as_float(record: Sequence[Any], index: int) -> float:
    value = record[index]
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise DecodeError(
            f"Field {FIELD_NAMES[index]!r} is not numeric: {value!r}",
            field=FIELD_NAMES[index],
            value=value,
        )
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    text = value.decode("utf-8") if isinstance(value, bytes) else str(value)
    try:
        return float(text.strip())
    except ValueError as exc:
        raise DecodeError(
            f"Field {FIELD_NAMES[index]!r} is not a decimal number: {value!r}",
            field=FIELD_NAMES[index],
            value=value,
        ) from exc


def _as_str(record: Sequence[Any], index: int) -> Optional[str]:
    value = record[index]
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def classify_timestamp(value: Any) -> TimestampVariant:
    """Map a raw timestamp field onto one of the recognized variants."""
    if isinstance(value, (NativeInstant, PackedTimestamp, LegacyDateTime)):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is not None and value.utcoffset() is not None:
            return NativeInstant(value)
        return LegacyDateTime(value)
    raise DecodeError(
        f"unsupported timestamp type: {type(value).__name__}",
        field="event_time",
        value=value,
    )


def decode_reading(record: Sequence[Any]) -> SensorReading:
    if len(record) < len(FIELD_NAMES):
        raise DecodeError(
            f"Expected at least {len(FIELD_NAMES)} fields, got {len(record)}",
            value=record,
        )

    event_time = classify_timestamp(record[_EVENT_TIME_INDEX]).to_instant()
    metadata = SensorMetadata(
        manufacturer=_as_str(record, 9),
        model=_as_str(record, 10),
        firmware=_as_str(record, 11),
        latitude=_as_float(record, 12),
        longitude=_as_float(record, 13),
    )
    return SensorReading(
        sensor_id=_as_str(record, 0),
        sensor_type=_as_str(record, 1),
        location=_as_str(record, 2),
        temperature=_as_float(record, 3),
        humidity=_as_float(record, 4),
        pressure=_as_float(record, 5),
        battery_level=_as_float(record, 6),
        status=_as_str(record, 7),
        event_time=event_time,
        metadata=metadata,
    )
