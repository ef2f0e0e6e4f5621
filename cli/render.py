from __future__ import annotations

from typing import Any, Dict, Iterable

import typer

from storage.mock_log import ScanRecord

_MEASUREMENTS = ("temperature", "humidity", "pressure", "battery_level")


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def format_aggregate(payload: Dict[str, Any]) -> str:
    averages = " ".join(
        f"avg_{name}={payload.get(f'avg_{name}', 0.0):.2f}" for name in _MEASUREMENTS
    )
    return (
        f"{payload.get('sensor_id')} "
        f"[{payload.get('window_start')}, {payload.get('window_end')}) "
        f"count={payload.get('count')} {averages} "
        f"status={payload.get('latest_status')}"
    )


def render_aggregates(payloads: Iterable[Dict[str, Any]]) -> None:
    echo_heading("Aggregates")
    rendered = False
    for payload in payloads:
        typer.echo(f"  - {format_aggregate(payload)}")
        rendered = True
    if not rendered:
        typer.echo("No aggregates available.")


def render_run(payload: Dict[str, Any]) -> None:
    echo_heading("Run Summary")
    echo_key_values(
        [
            ("run_id", payload.get("run_id")),
            ("status", payload.get("status")),
            ("started_at", payload.get("started_at")),
            ("finished_at", payload.get("finished_at")),
            ("partitions", payload.get("partitions")),
            ("records_read", payload.get("records_read")),
            ("records_skipped", payload.get("records_skipped")),
            ("late_readings", payload.get("late_readings")),
            ("aggregates_emitted", payload.get("aggregates_emitted")),
            ("watermark", payload.get("watermark")),
        ]
    )
    errors = payload.get("errors") or []
    if errors:
        typer.echo()
        echo_heading("Errors")
        for error in errors:
            typer.echo(f"  - {error}")


def render_record(record: ScanRecord) -> None:
    typer.echo(f"bucket={record.bucket} offset={record.offset} row={list(record.row)!r}")
