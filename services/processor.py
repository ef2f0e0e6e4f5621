"""Background orchestration of engine runs for the HTTP API."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from app.schemas import ReadingIn, RunStatus, RunSummary, SensorAggregate
from datastore.mock_aggregates import MockAggregateTable, build_default_aggregate_table
from services.engine import EngineConfig, StreamingEngine
from settings import get_settings
from storage.mock_log import MockLogTable, build_default_cluster

logger = logging.getLogger(__name__)


def reading_to_row(reading: ReadingIn) -> Tuple[Any, ...]:
    """Lay a submitted reading out in source-table column order."""
    return (
        reading.sensor_id,
        reading.sensor_type,
        reading.location,
        reading.temperature,
        reading.humidity,
        reading.pressure,
        reading.battery_level,
        reading.status,
        reading.event_time,
        reading.manufacturer,
        reading.model,
        reading.firmware,
        reading.latitude,
        reading.longitude,
    )


class ProcessorService:
    """Coordinates the source table, engine runs and the aggregate sink."""

    def __init__(
        self,
        table: MockLogTable,
        sink: MockAggregateTable,
        engine_config: EngineConfig,
        workers: int = 2,
    ) -> None:
        self.table = table
        self.sink = sink
        self.engine_config = engine_config
        self.executor = ThreadPoolExecutor(max_workers=workers)
        self._runs: Dict[str, RunSummary] = {}
        self._engines: Dict[str, StreamingEngine] = {}
        self._runs_lock = Lock()

    def append_readings(self, readings: Iterable[ReadingIn]) -> int:
        """Append submitted readings to the source table."""
        rows = [reading_to_row(reading) for reading in readings]
        if not rows:
            raise ValueError("No readings supplied.")
        return self.table.append_many(rows)

    def enqueue_run(self) -> str:
        """Schedule an engine run over the source table."""
        run_id = str(uuid4())
        with self._runs_lock:
            self._runs[run_id] = RunSummary(run_id=run_id, status=RunStatus.queued)

        self.executor.submit(self._run_engine, run_id=run_id)
        return run_id

    def fetch_run(self, run_id: str) -> RunSummary:
        with self._runs_lock:
            summary = self._runs.get(run_id)
        if summary is None:
            raise KeyError(f"Run {run_id!r} not found.")
        return summary

    def list_aggregates(self, sensor_id: Optional[str] = None) -> List[SensorAggregate]:
        return self.sink.scan(sensor_id=sensor_id)

    def shutdown(self) -> None:
        """Ask running engines to drain, then release executor resources."""
        with self._runs_lock:
            engines = list(self._engines.values())
        for engine in engines:
            engine.stop()
        self.executor.shutdown(wait=False, cancel_futures=True)

    def _run_engine(self, run_id: str) -> None:
        started_at = datetime.now(timezone.utc)
        engine = StreamingEngine(self.table, self.sink, self.engine_config)
        with self._runs_lock:
            self._engines[run_id] = engine
            self._runs[run_id] = RunSummary(
                run_id=run_id, status=RunStatus.running, started_at=started_at
            )

        try:
            summary = engine.run(run_id=run_id)
        except Exception as exc:
            logger.exception("Engine run failed", extra={"run_id": run_id})
            summary = RunSummary(
                run_id=run_id,
                status=RunStatus.failed,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                errors=[str(exc)],
            )
        finally:
            with self._runs_lock:
                self._engines.pop(run_id, None)

        with self._runs_lock:
            self._runs[run_id] = summary


@lru_cache
def build_default_processor(
    workers: Optional[int] = None,
) -> ProcessorService:
    """Factory that wires the processor with the configured mocks."""
    settings = get_settings()
    cluster = build_default_cluster()
    table = cluster.create_table(settings.database, settings.table, settings.log_buckets)
    sink = build_default_aggregate_table()
    worker_count = workers or settings.processor_workers
    return ProcessorService(
        table=table,
        sink=sink,
        engine_config=EngineConfig.from_settings(settings),
        workers=worker_count,
    )
