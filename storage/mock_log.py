from __future__ import annotations

import json
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from models.records import LegacyDateTime, NativeInstant, PackedTimestamp
from settings import get_settings

EARLIEST_OFFSET = "earliest"
LATEST_OFFSET = "latest"
TABLE_META_FILE = "table.json"

Offset = Union[str, int]
Row = Tuple[Any, ...]


class TableNotFoundError(LookupError):
    """The requested database/table does not exist on the log cluster."""


class SourceUnavailableError(ConnectionError):
    """The log cluster cannot be reached."""


class TransientReadError(IOError):
    """A poll failed but may succeed when retried."""


@dataclass(frozen=True)
class TablePath:
    database: str
    table: str

    def __str__(self) -> str:
        return f"{self.database}.{self.table}"


@dataclass(frozen=True)
class ScanRecord:
    bucket: int
    offset: int
    row: Row


def bucket_for(key: Any, num_buckets: int) -> int:
    return zlib.crc32(str(key).encode("utf-8")) % num_buckets


def _encode_field(value: Any) -> Any:
    if isinstance(value, PackedTimestamp):
        return {"$packed": [value.millisecond, value.nano_of_millisecond]}
    if isinstance(value, NativeInstant):
        value = value.value
    elif isinstance(value, LegacyDateTime):
        value = value.value
    if isinstance(value, datetime):
        tag = "$instant" if value.tzinfo is not None else "$datetime"
        return {tag: value.isoformat()}
    return value


def _decode_field(value: Any) -> Any:
    if not isinstance(value, dict) or len(value) != 1:
        return value
    tag, payload = next(iter(value.items()))
    if tag == "$packed":
        return PackedTimestamp(millisecond=int(payload[0]), nano_of_millisecond=int(payload[1]))
    if tag in {"$instant", "$datetime"}:
        return datetime.fromisoformat(payload)
    return value


class MockLogTable:
    """Append-only, bucketed log of positional rows.

    Rows are routed to buckets by their first field (the sensor id) and can be
    persisted as one JSON-lines file per bucket.
    """

    def __init__(
        self,
        path: TablePath,
        num_buckets: int = 3,
        root_path: Optional[Path] = None,
    ) -> None:
        if num_buckets < 1:
            raise ValueError("A table needs at least one bucket.")
        self.path = path
        self.num_buckets = num_buckets
        self.root_path = root_path
        self._buckets: List[List[Row]] = [[] for _ in range(num_buckets)]
        self._condition = threading.Condition(threading.RLock())
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)
            meta = root_path / TABLE_META_FILE
            if not meta.exists():
                meta.write_text(json.dumps({"num_buckets": num_buckets}))
            self._load_existing_rows()

    def append(self, row: Sequence[Any]) -> Tuple[int, int]:
        """Append a row and return its ``(bucket, offset)``."""
        record = tuple(row)
        bucket = bucket_for(record[0] if record else None, self.num_buckets)
        with self._condition:
            offset = len(self._buckets[bucket])
            self._buckets[bucket].append(record)
            if self.root_path:
                with self._bucket_file(bucket).open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps([_encode_field(v) for v in record]) + "\n")
            self._condition.notify_all()
        return bucket, offset

    def append_many(self, rows: Sequence[Sequence[Any]]) -> int:
        for row in rows:
            self.append(row)
        return len(rows)

    def bucket_size(self, bucket: int) -> int:
        with self._condition:
            return len(self._buckets[bucket])

    def read(self, bucket: int, offset: int, max_records: int) -> List[ScanRecord]:
        with self._condition:
            rows = self._buckets[bucket][offset : offset + max_records]
        return [ScanRecord(bucket=bucket, offset=offset + i, row=row) for i, row in enumerate(rows)]

    def wait_until(self, predicate: Callable[[], bool], timeout: float) -> bool:
        """Block until ``predicate`` holds; it is checked under the append lock."""
        with self._condition:
            return self._condition.wait_for(predicate, timeout=timeout)

    def create_scanner(self, max_poll_records: int = 500) -> LogScanner:
        return LogScanner(self, max_poll_records=max_poll_records)

    def _bucket_file(self, bucket: int) -> Path:
        assert self.root_path is not None
        return self.root_path / f"bucket-{bucket}.jsonl"

    def _load_existing_rows(self) -> None:
        for bucket in range(self.num_buckets):
            path = self._bucket_file(bucket)
            if not path.exists():
                continue
            with path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    if line.strip():
                        fields = json.loads(line)
                        self._buckets[bucket].append(tuple(_decode_field(v) for v in fields))


class LogScanner:
    """Polls subscribed buckets of a :class:`MockLogTable` from tracked offsets."""

    def __init__(self, table: MockLogTable, max_poll_records: int = 500) -> None:
        self.table = table
        self.max_poll_records = max_poll_records
        self._positions: Dict[int, int] = {}

    @property
    def positions(self) -> Dict[int, int]:
        return dict(self._positions)

    def subscribe(self, bucket: int, offset: Offset = EARLIEST_OFFSET) -> None:
        if not 0 <= bucket < self.table.num_buckets:
            raise ValueError(f"Bucket {bucket} does not exist in table {self.table.path}.")
        if offset == EARLIEST_OFFSET:
            position = 0
        elif offset == LATEST_OFFSET:
            position = self.table.bucket_size(bucket)
        elif isinstance(offset, int) and offset >= 0:
            position = offset
        else:
            raise ValueError(f"Invalid offset {offset!r}.")
        self._positions[bucket] = position

    def subscribe_from_beginning(self, bucket: int) -> None:
        self.subscribe(bucket, EARLIEST_OFFSET)

    def poll(self, timeout: float) -> List[ScanRecord]:
        """Return available records, waiting up to ``timeout`` seconds for some."""
        records: List[ScanRecord] = []

        def _ready() -> bool:
            records.extend(self._read_available())
            return bool(records)

        self.table.wait_until(_ready, timeout=max(timeout, 0.0))
        return records

    def _read_available(self) -> List[ScanRecord]:
        records: List[ScanRecord] = []
        budget = self.max_poll_records
        for bucket in sorted(self._positions):
            if budget <= 0:
                break
            batch = self.table.read(bucket, self._positions[bucket], budget)
            if batch:
                self._positions[bucket] += len(batch)
                budget -= len(batch)
                records.extend(batch)
        return records


class MockLogCluster:
    """A set of log tables reachable through one bootstrap address."""

    def __init__(self, bootstrap: str, root_path: Optional[Path] = None) -> None:
        if not bootstrap or not bootstrap.strip():
            raise SourceUnavailableError("No bootstrap address configured.")
        self.bootstrap = bootstrap.strip()
        self.root_path = root_path
        self._tables: Dict[TablePath, MockLogTable] = {}
        self._lock = threading.Lock()

    def create_table(self, database: str, table: str, num_buckets: int = 3) -> MockLogTable:
        path = TablePath(database, table)
        with self._lock:
            existing = self._tables.get(path)
            if existing is not None:
                return existing
            created = MockLogTable(path, num_buckets=num_buckets, root_path=self._table_root(path))
            self._tables[path] = created
            return created

    def get_table(self, database: str, table: str) -> MockLogTable:
        path = TablePath(database, table)
        with self._lock:
            existing = self._tables.get(path)
            if existing is not None:
                return existing
            root = self._table_root(path)
            if root is not None and (root / TABLE_META_FILE).exists():
                meta = json.loads((root / TABLE_META_FILE).read_text())
                loaded = MockLogTable(path, num_buckets=int(meta["num_buckets"]), root_path=root)
                self._tables[path] = loaded
                return loaded
        raise TableNotFoundError(f"Table {path} not found on {self.bootstrap!r}.")

    def _table_root(self, path: TablePath) -> Optional[Path]:
        if not self.root_path:
            return None
        return self.root_path / path.database / path.table


@lru_cache
def build_default_cluster(
    bootstrap: Optional[str] = None,
    root_path: Optional[str] = None,
) -> MockLogCluster:
    settings = get_settings()
    address = settings.bootstrap if bootstrap is None else bootstrap
    log_root = settings.log_root_path if root_path is None else root_path
    path = Path(log_root) if log_root else None
    return MockLogCluster(bootstrap=address, root_path=path)
