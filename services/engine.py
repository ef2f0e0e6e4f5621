"""Partitioned event-time windowing engine over a polled source table."""

from __future__ import annotations

import logging
import threading
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Callable, List, Optional, Sequence

from app.schemas import RunStatus, RunSummary
from datastore.mock_aggregates import build_default_aggregate_table
from models.records import SensorReading, from_epoch_ms
from services.aggregator import Aggregator
from services.decoder import DecodeError, decode_reading
from services.emitter import AggregateSink, ResultEmitter
from services.pipeline import PartitionPipeline
from services.watermark import combine_watermarks
from services.windowing import TumblingWindowAssigner
from settings import Settings, get_settings
from storage.mock_log import (
    EARLIEST_OFFSET,
    LogScanner,
    MockLogTable,
    Offset,
    ScanRecord,
    TransientReadError,
    build_default_cluster,
)

logger = logging.getLogger(__name__)


class UpstreamReadError(RuntimeError):
    """Polling the source kept failing after all retries."""


@dataclass(frozen=True)
class EngineConfig:
    window_size_ms: int = 60_000
    bounded_delay_ms: int = 5_000
    partitions: int = 4
    queue_size: int = 10_000
    poll_timeout: float = 1.0
    idle_poll_limit: Optional[int] = 5
    start_offset: Offset = EARLIEST_OFFSET
    decode_error_policy: str = "abort"
    max_read_retries: int = 3
    retry_backoff: float = 0.25
    max_backoff: float = 2.0

    def __post_init__(self) -> None:
        if self.partitions < 1:
            raise ValueError("partitions must be >= 1.")
        if self.decode_error_policy not in {"abort", "skip"}:
            raise ValueError(f"Unknown decode error policy {self.decode_error_policy!r}.")

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            window_size_ms=settings.window_size_minutes * 60_000,
            bounded_delay_ms=int(settings.bounded_delay_seconds * 1000),
            partitions=settings.partitions,
            queue_size=settings.partition_queue_size,
            poll_timeout=settings.poll_timeout_seconds,
            idle_poll_limit=settings.idle_poll_limit or None,
            start_offset=settings.start_offset,
            decode_error_policy=settings.decode_error_policy,
            max_read_retries=settings.max_read_retries,
        )


def partition_for(sensor_id: str, partitions: int) -> int:
    return zlib.crc32(sensor_id.encode("utf-8")) % partitions


class _Flush:
    pass


class _Stop:
    pass


_FLUSH = _Flush()
_STOP = _Stop()


@dataclass(frozen=True)
class _AdvanceWatermark:
    watermark_ms: int


class _PartitionWorker:
    """Feeds one :class:`PartitionPipeline` from its own queue on its own thread."""

    def __init__(self, pipeline: PartitionPipeline, queue_size: int) -> None:
        self.pipeline = pipeline
        self.queue: Queue[Any] = Queue(maxsize=queue_size)
        self.error: Optional[BaseException] = None
        self.failed = threading.Event()
        self.thread = threading.Thread(
            target=self._work, name=f"partition-{pipeline.partition_id}", daemon=True
        )

    def start(self) -> None:
        self.thread.start()

    def submit(self, item: Any) -> None:
        self.queue.put(item)

    def join(self) -> None:
        self.thread.join()

    def _work(self) -> None:
        while True:
            item = self.queue.get()
            try:
                if item is _STOP:
                    self._discard_open_windows()
                    return
                if self.error is not None:
                    # failed partitions drain their queue without processing
                    continue
                if item is _FLUSH:
                    self.pipeline.flush()
                elif isinstance(item, _AdvanceWatermark):
                    self.pipeline.advance_watermark(item.watermark_ms)
                else:
                    self.pipeline.process(item)
            except Exception as exc:
                self.error = exc
                self.failed.set()
                logger.exception(
                    "Partition failed",
                    extra={"partition": self.pipeline.partition_id},
                )
            finally:
                self.queue.task_done()

    def _discard_open_windows(self) -> None:
        discarded = len(self.pipeline.store)
        if discarded:
            logger.warning(
                "Discarding open windows on shutdown",
                extra={"partition": self.pipeline.partition_id, "record_count": discarded},
            )
            self.pipeline.store.drain()


class StreamingEngine:
    """Reads rows from a log table, windows them per sensor and emits aggregates.

    Rows are decoded on the polling thread and routed by sensor id to one of
    ``config.partitions`` workers. Each worker owns its keys' window state and
    watermark, so no state is shared between partitions.
    """

    def __init__(
        self,
        table: MockLogTable,
        sink: AggregateSink,
        config: Optional[EngineConfig] = None,
        *,
        decoder: Callable[[Sequence[Any]], SensorReading] = decode_reading,
        aggregator: Optional[Aggregator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.table = table
        self.sink = sink
        self.config = config or EngineConfig()
        self.decoder = decoder
        self.aggregator = aggregator or Aggregator()
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._workers: List[_PartitionWorker] = []
        self._records_read = 0
        self._records_skipped = 0

    @property
    def watermark(self) -> Optional[int]:
        return combine_watermarks(w.pipeline.watermark for w in self._workers)

    def stop(self) -> None:
        """Stop accepting input; the running :meth:`run` drains and returns.

        A stop requested before :meth:`run` starts makes that run return at once.
        """
        self._stop_event.set()

    def advance_watermark(self, watermark_ms: int) -> None:
        """Push an external watermark to every partition of the running engine.

        Windows that end at or before ``watermark_ms`` fire without waiting for
        more input on their keys.
        """
        for worker in list(self._workers):
            worker.submit(_AdvanceWatermark(watermark_ms))

    def run(self, run_id: Optional[str] = None) -> RunSummary:
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("Engine is already running.")
        try:
            return self._run(run_id)
        finally:
            self._stop_event.clear()
            self._run_lock.release()

    def _run(self, run_id: Optional[str]) -> RunSummary:
        started_at = datetime.now(timezone.utc)
        self._records_read = 0
        self._records_skipped = 0

        scanner = self.table.create_scanner()
        for bucket in range(self.table.num_buckets):
            scanner.subscribe(bucket, self.config.start_offset)
        logger.info(
            "Subscribed to %d buckets of %s",
            self.table.num_buckets,
            self.table.path,
            extra={"run_id": run_id},
        )

        self._workers = [self._build_worker(i) for i in range(self.config.partitions)]
        for worker in self._workers:
            worker.start()

        graceful = False
        try:
            self._consume(scanner, run_id)
            graceful = True
        finally:
            self._shutdown(flush=graceful)
        self._raise_partition_failure()

        return self._summarize(run_id, started_at)

    def _build_worker(self, partition_id: int) -> _PartitionWorker:
        pipeline = PartitionPipeline(
            partition_id=partition_id,
            assigner=TumblingWindowAssigner(self.config.window_size_ms),
            emitter=ResultEmitter(self.sink),
            bounded_delay_ms=self.config.bounded_delay_ms,
            aggregator=self.aggregator,
        )
        return _PartitionWorker(pipeline, self.config.queue_size)

    def _consume(self, scanner: LogScanner, run_id: Optional[str]) -> None:
        idle_polls = 0
        limit = self.config.idle_poll_limit
        while not self._stop_event.is_set():
            records = self._poll(scanner, run_id)
            if not records:
                idle_polls += 1
                if limit and idle_polls >= limit:
                    logger.info(
                        "No new records after %d polls, stopping",
                        idle_polls,
                        extra={"run_id": run_id},
                    )
                    return
                continue

            idle_polls = 0
            for record in records:
                self._records_read += 1
                reading = self._decode(record, run_id)
                if reading is not None:
                    self._route(reading)
            self._raise_partition_failure()

    def _poll(self, scanner: LogScanner, run_id: Optional[str]) -> List[ScanRecord]:
        attempt = 0
        while True:
            try:
                return scanner.poll(self.config.poll_timeout)
            except TransientReadError as exc:
                attempt += 1
                if attempt > self.config.max_read_retries:
                    raise UpstreamReadError(
                        f"Polling {self.table.path} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = min(self.config.retry_backoff * (2 ** (attempt - 1)), self.config.max_backoff)
                logger.warning(
                    "Transient read failure, retrying in %.2fs",
                    delay,
                    extra={"run_id": run_id, "attempt": attempt, "reason": str(exc)},
                )
                self._sleep(delay)

    def _decode(self, record: ScanRecord, run_id: Optional[str]) -> Optional[SensorReading]:
        try:
            reading = self.decoder(record.row)
            if reading.sensor_id is None:
                raise DecodeError("Reading has no sensor_id", field="sensor_id")
            return reading
        except DecodeError as exc:
            extra = {
                "run_id": run_id,
                "bucket": record.bucket,
                "offset": record.offset,
                "reason": str(exc),
                "invalid_value": repr(exc.value) if exc.value is not None else None,
            }
            if self.config.decode_error_policy == "skip":
                self._records_skipped += 1
                logger.warning("Skipping undecodable record", extra=extra)
                return None
            logger.error("Aborting on undecodable record", extra=extra)
            raise

    def _route(self, reading: SensorReading) -> None:
        if reading.sensor_id is None:
            raise ValueError("Cannot route a reading without a sensor_id.")
        index = partition_for(reading.sensor_id, len(self._workers))
        self._workers[index].submit(reading)

    def _shutdown(self, flush: bool) -> None:
        for worker in self._workers:
            if flush:
                worker.submit(_FLUSH)
            worker.submit(_STOP)
        for worker in self._workers:
            worker.join()

    def _raise_partition_failure(self) -> None:
        for worker in self._workers:
            if worker.failed.is_set() and worker.error is not None:
                raise worker.error

    def _summarize(self, run_id: Optional[str], started_at: datetime) -> RunSummary:
        watermark = self.watermark
        emitted = sum(w.pipeline.emitter.emitted for w in self._workers)
        status = RunStatus.completed if self._records_read else RunStatus.empty
        if status is RunStatus.empty:
            logger.info(
                "No records found in %s",
                self.table.path,
                extra={"run_id": run_id, "status": status.value},
            )
        else:
            logger.info(
                "Run finished",
                extra={"run_id": run_id, "status": status.value, "record_count": emitted},
            )
        return RunSummary(
            run_id=run_id,
            status=status,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            partitions=len(self._workers),
            records_read=self._records_read,
            records_skipped=self._records_skipped,
            late_readings=sum(w.pipeline.late for w in self._workers),
            aggregates_emitted=emitted,
            watermark=from_epoch_ms(watermark) if watermark is not None else None,
        )


def build_engine(
    settings: Optional[Settings] = None,
    *,
    table: Optional[MockLogTable] = None,
    sink: Optional[AggregateSink] = None,
) -> StreamingEngine:
    """Wire an engine to the configured source table and aggregate sink."""
    settings = settings or get_settings()
    if table is None:
        cluster = build_default_cluster(settings.bootstrap, settings.log_root_path)
        table = cluster.get_table(settings.database, settings.table)
    if sink is None:
        sink = build_default_aggregate_table(
            settings.aggregate_table_name, settings.aggregate_persistence_path
        )
    return StreamingEngine(table, sink, EngineConfig.from_settings(settings))
