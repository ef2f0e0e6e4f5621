from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from app.schemas import SensorAggregate
from models.records import SensorReading, to_epoch_ms
from services.emitter import ResultEmitter
from services.pipeline import PartitionPipeline
from services.windowing import TumblingWindowAssigner

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RecordingSink:
    def __init__(self) -> None:
        self.items: List[SensorAggregate] = []

    def put_item(self, item: SensorAggregate) -> None:
        self.items.append(item)


def _reading(
    seconds: float,
    temperature: float,
    status: str = "OK",
    sensor_id: Optional[str] = "sensor-1",
) -> SensorReading:
    return SensorReading(
        sensor_id=sensor_id,
        sensor_type="climate",
        location="lab",
        temperature=temperature,
        humidity=50.0,
        pressure=1000.0,
        battery_level=75.0,
        status=status,
        event_time=_BASE + timedelta(seconds=seconds),
    )


def _pipeline(sink: RecordingSink, delay_ms: int = 5_000) -> PartitionPipeline:
    return PartitionPipeline(
        partition_id=0,
        assigner=TumblingWindowAssigner.of_minutes(1),
        emitter=ResultEmitter(sink),
        bounded_delay_ms=delay_ms,
    )


def test_window_fires_once_watermark_passes_end() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink)

    assert pipeline.process(_reading(10, 20.0, "OK")) == []
    assert pipeline.process(_reading(50, 30.0, "WARN")) == []
    emitted = pipeline.process(_reading(65, 10.0, "OK"))

    assert len(emitted) == 1
    aggregate = emitted[0]
    assert aggregate.sensor_id == "sensor-1"
    assert aggregate.window_start == _BASE
    assert aggregate.window_end == _BASE + timedelta(minutes=1)
    assert aggregate.count == 2
    assert aggregate.avg_temperature == 25.0
    assert aggregate.min_temperature == 20.0
    assert aggregate.max_temperature == 30.0
    assert aggregate.latest_status == "WARN"
    assert sink.items == emitted
    assert pipeline.open_windows[0].start == _BASE + timedelta(minutes=1)


def test_out_of_order_reading_within_delay_is_included() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink)

    pipeline.process(_reading(63, 1.0))
    pipeline.process(_reading(59, 2.0))
    emitted = pipeline.process(_reading(66, 3.0))

    assert [a.count for a in emitted] == [1]
    assert emitted[0].avg_temperature == 2.0
    assert pipeline.late == 0


def test_late_reading_is_dropped_without_reemitting() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink)
    pipeline.process(_reading(10, 20.0))
    pipeline.process(_reading(65, 10.0))

    assert pipeline.process(_reading(30, 99.0)) == []

    assert pipeline.late == 1
    assert len(sink.items) == 1
    assert sink.items[0].count == 1


def test_each_sensor_gets_its_own_aggregate() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink)
    pipeline.process(_reading(10, 20.0, sensor_id="b"))
    pipeline.process(_reading(20, 40.0, sensor_id="a"))

    emitted = pipeline.process(_reading(70, 0.0, sensor_id="a"))

    assert [a.sensor_id for a in emitted] == ["a", "b"]


def test_external_watermark_fires_closed_windows() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink, delay_ms=0)
    pipeline.process(_reading(10, 1.0))
    pipeline.process(_reading(-50, 1.0, sensor_id="sensor-2"))

    emitted = pipeline.advance_watermark(to_epoch_ms(_BASE) + 180_000)

    assert [a.window_start for a in emitted] == [_BASE]
    assert pipeline.late == 1
    assert pipeline.open_windows == []


def test_flush_emits_open_windows() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink)
    pipeline.process(_reading(10, 20.0))
    pipeline.process(_reading(62, 30.0))

    emitted = pipeline.flush()

    assert [a.window_start for a in emitted] == [_BASE, _BASE + timedelta(minutes=1)]
    assert pipeline.open_windows == []
    assert pipeline.flush() == []


def test_watermark_tracks_partition_progress() -> None:
    pipeline = _pipeline(RecordingSink())

    assert pipeline.watermark is None
    pipeline.process(_reading(10, 20.0))

    assert pipeline.watermark == to_epoch_ms(_BASE) + 5_000


def test_late_reading_is_logged_with_context(caplog) -> None:
    pipeline = _pipeline(RecordingSink())
    pipeline.process(_reading(70, 1.0))

    with caplog.at_level("WARNING", logger="services.pipeline"):
        pipeline.process(_reading(10, 1.0))

    (record,) = caplog.records
    assert record.levelname == "WARNING"
    assert record.sensor_id == "sensor-1"
    assert record.reason == "late"


def test_reading_beyond_delay_is_folded_while_window_is_open() -> None:
    sink = RecordingSink()
    pipeline = _pipeline(sink)
    pipeline.process(_reading(50, 30.0))

    pipeline.process(_reading(1, 10.0))
    emitted = pipeline.flush()

    assert pipeline.late == 0
    assert emitted[0].count == 2
    assert emitted[0].min_temperature == 10.0
