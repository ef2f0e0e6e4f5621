from __future__ import annotations
import json
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from app.schemas import SensorAggregate
from settings import get_settings


class MockAggregateTable:
    """Sink table for emitted aggregates, keyed by ``sensor_id@window_start``.

    Items are kept in the order they were first written; writing the same key
    again replaces the item in place.
    """

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._items: Dict[str, SensorAggregate] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def put_item(self, item: SensorAggregate) -> None:
        with self._lock:
            self._items[item.key] = item
            self._persist()

    def get_item(self, key: str) -> Optional[SensorAggregate]:
        with self._lock:
            return self._items.get(key)

    def scan(self, sensor_id: Optional[str] = None) -> list[SensorAggregate]:
        """Return stored aggregates, optionally for a single sensor."""

        with self._lock:
            return [
                item
                for item in self._items.values()
                if sensor_id is None or item.sensor_id == sensor_id
            ]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._persist()

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {key: item.model_dump(mode="json") for key, item in self._items.items()}
        self.persistence_path.write_text(json.dumps(payload, indent=2))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for key, payload in data.items():
            self._items[key] = SensorAggregate.model_validate(payload)


@lru_cache
def build_default_aggregate_table(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> MockAggregateTable:
    settings = get_settings()
    table_name = settings.aggregate_table_name if name is None else name
    table_path = settings.aggregate_persistence_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return MockAggregateTable(name=table_name, persistence_path=persistence)
