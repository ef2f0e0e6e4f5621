"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.schemas import ReadingIn, RecordsAccepted, RunAccepted, RunSummary, SensorAggregate
from services.processor import ProcessorService, build_default_processor

router = APIRouter()


def get_processor() -> ProcessorService:
    return build_default_processor()


@router.post(
    "/records",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=RecordsAccepted,
    summary="Append sensor readings to the source table.",
)
async def append_records(
    readings: List[ReadingIn],
    processor: ProcessorService = Depends(get_processor),
) -> RecordsAccepted:
    try:
        accepted = processor.append_readings(readings)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return RecordsAccepted(accepted=accepted)


@router.post(
    "/runs",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=RunAccepted,
    summary="Start a background engine run over the source table.",
)
async def start_run(
    processor: ProcessorService = Depends(get_processor),
) -> RunAccepted:
    return RunAccepted(run_id=processor.enqueue_run())


@router.get(
    "/runs/{run_id}",
    response_model=RunSummary,
    summary="Fetch the status and counters of an engine run.",
)
async def get_run(
    run_id: str,
    processor: ProcessorService = Depends(get_processor),
) -> RunSummary:
    try:
        return processor.fetch_run(run_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id!r} not found.",
        ) from exc


@router.get(
    "/aggregates",
    response_model=List[SensorAggregate],
    summary="List emitted window aggregates in emission order.",
)
async def list_aggregates(
    sensor_id: Optional[str] = Query(default=None, description="Only this sensor."),
    processor: ProcessorService = Depends(get_processor),
) -> List[SensorAggregate]:
    return processor.list_aggregates(sensor_id=sensor_id)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
