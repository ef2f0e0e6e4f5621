from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from app.schemas import RunStatus
from datastore.mock_aggregates import MockAggregateTable
from models.records import PackedTimestamp, SensorReading, to_epoch_ms
from services.aggregator import Aggregator, SensorAccumulator
from services.decoder import DecodeError
from services.engine import (
    EngineConfig,
    StreamingEngine,
    UpstreamReadError,
    build_engine,
    partition_for,
)
from settings import get_settings
from storage.mock_log import LogScanner, MockLogTable, ScanRecord, TablePath, TransientReadError

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _row(sensor_id, seconds: float, temperature=20.0, status: str = "OK") -> tuple:
    return (
        sensor_id,
        "climate",
        "lab",
        temperature,
        45.0,
        1000.0,
        90.0,
        status,
        _BASE + timedelta(seconds=seconds),
        "Acme",
        "T-1",
        "1.0",
        0.0,
        0.0,
    )


def _config(**overrides) -> EngineConfig:
    values = dict(partitions=2, poll_timeout=0.01, idle_poll_limit=1)
    values.update(overrides)
    return EngineConfig(**values)


def _table(rows=()) -> MockLogTable:
    table = MockLogTable(TablePath("iot", "sensor_readings"), num_buckets=2)
    table.append_many(list(rows))
    return table


class FlakyTable(MockLogTable):
    """Table whose scanner fails a fixed number of polls before recovering."""

    def __init__(self, failures: int) -> None:
        super().__init__(TablePath("iot", "flaky"), num_buckets=1)
        self.failures = failures

    def create_scanner(self, max_poll_records: int = 500) -> LogScanner:
        table = self

        class FlakyScanner(LogScanner):
            def poll(self, timeout: float) -> List[ScanRecord]:
                if table.failures > 0:
                    table.failures -= 1
                    raise TransientReadError("connection reset")
                return super().poll(timeout)

        return FlakyScanner(self, max_poll_records=max_poll_records)


def test_run_emits_one_aggregate_per_sensor_and_window() -> None:
    table = _table(
        [
            _row("a", 10, 20.0),
            _row("b", 15, 5.0),
            _row("a", 50, 30.0, "WARN"),
            _row("a", 65, 10.0),
            _row("b", 130, 7.0),
        ]
    )
    sink = MockAggregateTable(name="aggregates")
    engine = StreamingEngine(table, sink, _config())

    summary = engine.run(run_id="run-1")

    assert summary.run_id == "run-1"
    assert summary.status is RunStatus.completed
    assert summary.records_read == 5
    assert summary.aggregates_emitted == 4
    assert summary.partitions == 2

    first_a = sink.get_item(f"a@{to_epoch_ms(_BASE)}")
    assert first_a is not None
    assert first_a.count == 2
    assert first_a.avg_temperature == 25.0
    assert first_a.latest_status == "WARN"
    assert {item.sensor_id for item in sink.scan()} == {"a", "b"}
    assert len(sink.scan(sensor_id="b")) == 2


def test_late_reading_is_counted_not_emitted() -> None:
    table = _table([_row("a", 10), _row("a", 70), _row("a", 20)])
    sink = MockAggregateTable(name="aggregates")

    summary = StreamingEngine(table, sink, _config(partitions=1)).run()

    assert summary.late_readings == 1
    first = sink.get_item(f"a@{to_epoch_ms(_BASE)}")
    assert first is not None and first.count == 1
    assert summary.watermark == _BASE + timedelta(seconds=65)


def test_empty_table_reports_empty_run() -> None:
    sink = MockAggregateTable(name="aggregates")

    summary = StreamingEngine(_table(), sink, _config()).run()

    assert summary.status is RunStatus.empty
    assert summary.records_read == 0
    assert summary.watermark is None
    assert len(sink) == 0


def test_decode_error_aborts_run_by_default() -> None:
    table = _table([_row("a", 10), _row("a", 20, temperature="hot")])

    with pytest.raises(DecodeError):
        StreamingEngine(table, MockAggregateTable(name="aggregates"), _config()).run()


def test_skip_policy_counts_undecodable_records() -> None:
    table = _table([_row("a", 10), _row("a", 20, temperature="hot"), _row(None, 30)])
    sink = MockAggregateTable(name="aggregates")

    summary = StreamingEngine(table, sink, _config(decode_error_policy="skip")).run()

    assert summary.records_read == 3
    assert summary.records_skipped == 2
    assert summary.aggregates_emitted == 1


def test_packed_timestamps_are_windowed_like_instants() -> None:
    row = list(_row("a", 0))
    row[8] = PackedTimestamp(millisecond=to_epoch_ms(_BASE) + 30_000, nano_of_millisecond=5)
    sink = MockAggregateTable(name="aggregates")

    StreamingEngine(_table([tuple(row)]), sink, _config()).run()

    (aggregate,) = sink.scan()
    assert aggregate.window_start == _BASE
    assert aggregate.latest_event_time == _BASE + timedelta(seconds=30)


def test_transient_read_errors_are_retried_with_backoff() -> None:
    table = FlakyTable(failures=2)
    table.append(_row("a", 10))
    sleeps: List[float] = []

    summary = StreamingEngine(
        table, MockAggregateTable(name="aggregates"), _config(), sleep=sleeps.append
    ).run()

    assert sleeps == [0.25, 0.5]
    assert summary.records_read == 1


def test_persistent_read_errors_raise_upstream_error() -> None:
    table = FlakyTable(failures=10)
    sleeps: List[float] = []
    engine = StreamingEngine(
        table,
        MockAggregateTable(name="aggregates"),
        _config(max_read_retries=2),
        sleep=sleeps.append,
    )

    with pytest.raises(UpstreamReadError):
        engine.run()
    assert sleeps == [0.25, 0.5]


def test_partition_failure_is_raised_from_run() -> None:
    class BrokenAggregator(Aggregator):
        def fold(self, accumulator: SensorAccumulator, reading: SensorReading) -> SensorAccumulator:
            raise RuntimeError("boom")

    engine = StreamingEngine(
        _table([_row("a", 10)]),
        MockAggregateTable(name="aggregates"),
        _config(),
        aggregator=BrokenAggregator(),
    )

    with pytest.raises(RuntimeError, match="boom"):
        engine.run()


def test_stop_ends_an_unbounded_run() -> None:
    table = _table([_row("a", 10)])
    sink = MockAggregateTable(name="aggregates")
    engine = StreamingEngine(table, sink, _config(idle_poll_limit=None))
    timer = threading.Timer(0.2, engine.stop)
    timer.start()

    try:
        summary = engine.run()
    finally:
        timer.cancel()

    assert summary.records_read == 1
    assert summary.aggregates_emitted == 1


def test_latest_offset_skips_existing_rows() -> None:
    table = _table([_row("a", 10)])

    summary = StreamingEngine(
        table, MockAggregateTable(name="aggregates"), _config(start_offset="latest")
    ).run()

    assert summary.status is RunStatus.empty


def test_partition_for_is_stable_and_in_range() -> None:
    assert partition_for("sensor-1", 4) == partition_for("sensor-1", 4)
    assert all(0 <= partition_for(f"s{i}", 3) < 3 for i in range(50))


def test_engine_config_validation() -> None:
    with pytest.raises(ValueError):
        EngineConfig(partitions=0)
    with pytest.raises(ValueError):
        EngineConfig(decode_error_policy="ignore")


def test_build_engine_uses_settings(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("MOCK_LOG_ROOT_PATH", str(tmp_path / "log"))
    monkeypatch.setenv("WINDOW_SIZE_MINUTES", "5")
    monkeypatch.setenv("ENGINE_PARTITIONS", "3")
    get_settings.cache_clear()
    try:
        engine = build_engine(table=_table(), sink=MockAggregateTable(name="aggregates"))
        assert engine.config.window_size_ms == 300_000
        assert engine.config.partitions == 3
    finally:
        get_settings.cache_clear()


def test_empty_run_is_logged_as_information(caplog) -> None:
    with caplog.at_level("INFO", logger="services.engine"):
        StreamingEngine(_table(), MockAggregateTable(name="aggregates"), _config()).run(run_id="r")

    messages = [(r.levelname, r.getMessage()) for r in caplog.records]
    assert ("INFO", "No records found in iot.sensor_readings") in messages
    assert not [r for r in caplog.records if r.levelno >= 40]


def test_stop_before_run_is_honoured() -> None:
    engine = StreamingEngine(
        _table([_row("a", 10)]), MockAggregateTable(name="aggregates"), _config(idle_poll_limit=None)
    )
    engine.stop()

    summary = engine.run()

    assert summary.records_read == 0
    assert summary.status is RunStatus.empty


def test_external_watermark_fires_windows_before_shutdown(caplog) -> None:
    table = _table([_row("a", 10), _row("b", 20)])
    sink = MockAggregateTable(name="aggregates")
    engine = StreamingEngine(table, sink, _config(idle_poll_limit=None))
    advance = threading.Timer(0.1, engine.advance_watermark, args=(to_epoch_ms(_BASE) + 60_000,))
    stop = threading.Timer(0.4, engine.stop)
    advance.start()
    stop.start()

    try:
        with caplog.at_level("INFO", logger="services.pipeline"):
            summary = engine.run()
    finally:
        advance.cancel()
        stop.cancel()

    assert summary.aggregates_emitted == 2
    assert summary.watermark == _BASE + timedelta(minutes=1)
    assert not [r for r in caplog.records if r.getMessage() == "Flushing open windows"]


def test_zero_idle_limit_from_settings_means_unbounded(monkeypatch) -> None:
    monkeypatch.setenv("IDLE_POLL_LIMIT", "0")
    get_settings.cache_clear()
    try:
        config = EngineConfig.from_settings(get_settings())
    finally:
        get_settings.cache_clear()

    assert config.idle_poll_limit is None


def test_routing_a_reading_without_sensor_id_raises() -> None:
    engine = StreamingEngine(_table(), MockAggregateTable(name="aggregates"), _config())
    reading = SensorReading(
        sensor_id=None,
        sensor_type=None,
        location=None,
        temperature=0.0,
        humidity=0.0,
        pressure=0.0,
        battery_level=0.0,
        status=None,
        event_time=_BASE,
    )

    with pytest.raises(ValueError, match="sensor_id"):
        engine._route(reading)
