from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Union


_BOOTSTRAP_ENV = "SENSOR_AGG_BOOTSTRAP"
_DATABASE_ENV = "SENSOR_AGG_DATABASE"
_TABLE_ENV = "SENSOR_AGG_TABLE"
_LOG_ROOT_ENV = "MOCK_LOG_ROOT_PATH"
_LOG_BUCKETS_ENV = "MOCK_LOG_BUCKETS"
_AGGREGATE_TABLE_ENV = "AGGREGATE_TABLE_NAME"
_AGGREGATE_PATH_ENV = "AGGREGATE_TABLE_PERSISTENCE_PATH"
_WINDOW_MINUTES_ENV = "WINDOW_SIZE_MINUTES"
_BOUNDED_DELAY_ENV = "BOUNDED_DELAY_SECONDS"
_PARTITIONS_ENV = "ENGINE_PARTITIONS"
_QUEUE_SIZE_ENV = "PARTITION_QUEUE_SIZE"
_POLL_TIMEOUT_ENV = "POLL_TIMEOUT_SECONDS"
_IDLE_POLL_LIMIT_ENV = "IDLE_POLL_LIMIT"
_EMPTY_POLL_LIMIT_ENV = "EMPTY_POLL_LIMIT"
_RECORD_LIMIT_ENV = "RECORD_LIMIT"
_START_OFFSET_ENV = "SOURCE_START_OFFSET"
_DECODE_POLICY_ENV = "DECODE_ERROR_POLICY"
_MAX_RETRIES_ENV = "MAX_READ_RETRIES"
_WORKER_COUNT_ENV = "PROCESSOR_WORKER_COUNT"
_LOG_LEVEL_ENV = "LOG_LEVEL"

DECODE_ERROR_POLICIES = ("abort", "skip")

StartOffset = Union[str, int]


class ConfigurationError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass(frozen=True)
class Settings:
    bootstrap: str
    database: str
    table: str
    log_root_path: Optional[str]
    log_buckets: int
    aggregate_table_name: str
    aggregate_persistence_path: Optional[str]
    window_size_minutes: int
    bounded_delay_seconds: float
    partitions: int
    partition_queue_size: int
    poll_timeout_seconds: float
    idle_poll_limit: int
    empty_poll_limit: int
    record_limit: int
    start_offset: StartOffset
    decode_error_policy: str
    max_read_retries: int
    processor_workers: int
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {candidate!r}.") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {parsed}.")
    return parsed


def _read_float_env(name: str, default: float, minimum: float = 0.0) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {candidate!r}.") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {parsed}.")
    return parsed


def parse_start_offset(value: str) -> StartOffset:
    """Accept ``earliest``, ``latest`` or a non-negative integer offset."""
    candidate = value.strip().lower()
    if candidate in {"earliest", "latest"}:
        return candidate
    try:
        parsed = int(candidate)
    except ValueError as exc:
        raise ConfigurationError(
            f"Start offset must be 'earliest', 'latest' or an integer, got {value!r}."
        ) from exc
    if parsed < 0:
        raise ConfigurationError(f"Start offset must be non-negative, got {parsed}.")
    return parsed


def _read_start_offset(default: StartOffset) -> StartOffset:
    value = os.getenv(_START_OFFSET_ENV)
    if value is None or not value.strip():
        return default
    return parse_start_offset(value)


def _read_decode_policy(default: str) -> str:
    candidate = _read_str_env(_DECODE_POLICY_ENV, default).lower()
    if candidate not in DECODE_ERROR_POLICIES:
        raise ConfigurationError(
            f"{_DECODE_POLICY_ENV} must be one of {', '.join(DECODE_ERROR_POLICIES)}, "
            f"got {candidate!r}."
        )
    return candidate


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        bootstrap=_read_str_env(_BOOTSTRAP_ENV, "localhost:9123"),
        database=_read_str_env(_DATABASE_ENV, "iot"),
        table=_read_str_env(_TABLE_ENV, "sensor_readings"),
        log_root_path=_read_optional_env(_LOG_ROOT_ENV, "./tmp/mock_log"),
        log_buckets=_read_int_env(_LOG_BUCKETS_ENV, 3),
        aggregate_table_name=_read_str_env(_AGGREGATE_TABLE_ENV, "sensor_aggregates"),
        aggregate_persistence_path=_read_optional_env(
            _AGGREGATE_PATH_ENV, "./tmp/aggregates.json"
        ),
        window_size_minutes=_read_int_env(_WINDOW_MINUTES_ENV, 1),
        bounded_delay_seconds=_read_float_env(_BOUNDED_DELAY_ENV, 5.0),
        partitions=_read_int_env(_PARTITIONS_ENV, 4),
        partition_queue_size=_read_int_env(_QUEUE_SIZE_ENV, 10000),
        poll_timeout_seconds=_read_float_env(_POLL_TIMEOUT_ENV, 1.0),
        idle_poll_limit=_read_int_env(_IDLE_POLL_LIMIT_ENV, 5, minimum=0),
        empty_poll_limit=_read_int_env(_EMPTY_POLL_LIMIT_ENV, 5),
        record_limit=_read_int_env(_RECORD_LIMIT_ENV, 10),
        start_offset=_read_start_offset("earliest"),
        decode_error_policy=_read_decode_policy("abort"),
        max_read_retries=_read_int_env(_MAX_RETRIES_ENV, 3, minimum=0),
        processor_workers=_read_int_env(_WORKER_COUNT_ENV, 2),
        log_level=_read_log_level("INFO"),
    )
