"""Pydantic schemas shared by the engine output, the sink and the HTTP API."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.records import to_epoch_ms


class SensorMetadataSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware: Optional[str] = None
    latitude: float = 0.0
    longitude: float = 0.0


class SensorAggregate(BaseModel):
    """Aggregate emitted once per sensor and closed window."""

    model_config = ConfigDict(frozen=True)

    sensor_id: str
    sensor_type: Optional[str] = None
    location: Optional[str] = None
    window_start: datetime
    window_end: datetime
    count: int = Field(..., ge=1)
    avg_temperature: float
    min_temperature: float
    max_temperature: float
    avg_humidity: float
    min_humidity: float
    max_humidity: float
    avg_pressure: float
    min_pressure: float
    max_pressure: float
    avg_battery_level: float
    min_battery_level: float
    max_battery_level: float
    latest_status: Optional[str] = None
    latest_event_time: Optional[datetime] = None
    metadata: SensorMetadataSchema = Field(default_factory=SensorMetadataSchema)

    @property
    def key(self) -> str:
        return f"{self.sensor_id}@{to_epoch_ms(self.window_start)}"


class ReadingIn(BaseModel):
    """A reading submitted over HTTP, appended to the source table as a row."""

    sensor_id: str = Field(..., min_length=1)
    sensor_type: Optional[str] = None
    location: Optional[str] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    battery_level: Optional[float] = None
    status: Optional[str] = None
    event_time: datetime
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    firmware: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class RecordsAccepted(BaseModel):
    accepted: int = Field(..., ge=0)


class RunStatus(str, Enum):
    """Lifecycle of an engine run."""

    queued = "queued"
    running = "running"
    completed = "completed"
    empty = "empty"
    failed = "failed"


class RunAccepted(BaseModel):
    run_id: str = Field(..., description="Identifier of the scheduled engine run.")


class RunSummary(BaseModel):
    """Outcome of one engine run over the source table."""

    run_id: Optional[str] = None
    status: RunStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    partitions: int = Field(default=0, ge=0)
    records_read: int = Field(default=0, ge=0)
    records_skipped: int = Field(default=0, ge=0)
    late_readings: int = Field(default=0, ge=0)
    aggregates_emitted: int = Field(default=0, ge=0)
    watermark: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)
