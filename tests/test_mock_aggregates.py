from datetime import datetime, timedelta, timezone
from pathlib import Path

from app.schemas import SensorAggregate
from datastore.mock_aggregates import MockAggregateTable

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _aggregate(sensor_id: str, minute: int, count: int = 1) -> SensorAggregate:
    return SensorAggregate(
        sensor_id=sensor_id,
        window_start=_BASE + timedelta(minutes=minute),
        window_end=_BASE + timedelta(minutes=minute + 1),
        count=count,
        avg_temperature=20.0,
        min_temperature=19.0,
        max_temperature=21.0,
        avg_humidity=40.0,
        min_humidity=40.0,
        max_humidity=40.0,
        avg_pressure=1000.0,
        min_pressure=1000.0,
        max_pressure=1000.0,
        avg_battery_level=80.0,
        min_battery_level=80.0,
        max_battery_level=80.0,
        latest_status="OK",
        latest_event_time=_BASE + timedelta(minutes=minute, seconds=30),
    )


def test_put_and_get_round_trip_through_disk(tmp_path: Path) -> None:
    path = tmp_path / "aggregates.json"
    table = MockAggregateTable(name="test", persistence_path=path)
    aggregate = _aggregate("sensor-1", 0, count=3)

    table.put_item(aggregate)

    loaded = MockAggregateTable(name="test", persistence_path=path).get_item(aggregate.key)
    assert loaded == aggregate


def test_scan_keeps_emission_order_and_filters() -> None:
    table = MockAggregateTable(name="test")
    table.put_item(_aggregate("b", 0))
    table.put_item(_aggregate("a", 0))
    table.put_item(_aggregate("b", 1))

    assert [(item.sensor_id, item.window_start.minute) for item in table.scan()] == [
        ("b", 0),
        ("a", 0),
        ("b", 1),
    ]
    assert len(table.scan(sensor_id="b")) == 2
    assert table.scan(sensor_id="zzz") == []


def test_put_same_key_replaces_item() -> None:
    table = MockAggregateTable(name="test")
    table.put_item(_aggregate("a", 0, count=1))
    table.put_item(_aggregate("a", 0, count=2))

    assert len(table) == 1
    assert table.scan()[0].count == 2


def test_clear_empties_persisted_table(tmp_path: Path) -> None:
    path = tmp_path / "aggregates.json"
    table = MockAggregateTable(name="test", persistence_path=path)
    table.put_item(_aggregate("a", 0))

    table.clear()

    assert len(MockAggregateTable(name="test", persistence_path=path)) == 0


def test_corrupt_file_loads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "aggregates.json"
    path.write_text("{not json")

    assert len(MockAggregateTable(name="test", persistence_path=path)) == 0
