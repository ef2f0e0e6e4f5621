from __future__ import annotations

import signal
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer

from app.schemas import SensorAggregate
from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import format_aggregate, render_aggregates, render_record, render_run
from logging_config import configure_logging
from services.decoder import DecodeError
from services.emitter import AggregateSink
from services.engine import UpstreamReadError, build_engine
from settings import ConfigurationError, Settings, get_settings, parse_start_offset
from storage.mock_log import (
    EARLIEST_OFFSET,
    SourceUnavailableError,
    TableNotFoundError,
    build_default_cluster,
)


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


class EchoingSink:
    """Writes aggregates to the configured table and echoes each one."""

    def __init__(self, inner: AggregateSink) -> None:
        self.inner = inner

    def put_item(self, item: SensorAggregate) -> None:
        self.inner.put_item(item)
        typer.echo(format_aggregate(item.model_dump(mode="json")))


app = typer.Typer(
    help="Event-time window aggregation of sensor readings.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _local_settings(**overrides: Any) -> Settings:
    try:
        settings = get_settings()
        offset = overrides.pop("start_offset", None)
        if offset is not None:
            overrides["start_offset"] = parse_start_offset(offset)
    except ConfigurationError as exc:
        _fail(f"Invalid configuration: {exc}")
    return replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def _bootstrap_option() -> Any:
    return typer.Option(None, "--bootstrap", help="Address of the log cluster.")


def _database_option() -> Any:
    return typer.Option(None, "--database", help="Database holding the readings table.")


def _table_option() -> Any:
    return typer.Option(None, "--table", help="Readings table name.")


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Aggregator API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between status checks when waiting for a run.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait for a run to finish.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        run_timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("run")
def run_command(
    bootstrap: Optional[str] = _bootstrap_option(),
    database: Optional[str] = _database_option(),
    table: Optional[str] = _table_option(),
    window_minutes: Optional[int] = typer.Option(
        None, "--window-minutes", min=1, help="Tumbling window size in minutes."
    ),
    bounded_delay_seconds: Optional[float] = typer.Option(
        None, "--bounded-delay-seconds", min=0.0, help="Tolerated out-of-orderness."
    ),
    partitions: Optional[int] = typer.Option(
        None, "--partitions", min=1, help="Number of parallel key partitions."
    ),
    offset: Optional[str] = typer.Option(
        None, "--offset", help="Start offset: earliest, latest or a number."
    ),
    poll_timeout: Optional[float] = typer.Option(
        None, "--poll-timeout", min=0.0, help="Seconds to wait per poll."
    ),
    idle_poll_limit: Optional[int] = typer.Option(
        None,
        "--idle-poll-limit",
        min=0,
        help="Empty polls before stopping; 0 runs until interrupted.",
    ),
    skip_bad_records: Optional[bool] = typer.Option(
        None,
        "--skip-bad-records/--abort-on-bad-records",
        help="Skip undecodable records instead of aborting.",
    ),
) -> None:
    """Run the windowing engine locally over the readings table."""
    policy = None if skip_bad_records is None else ("skip" if skip_bad_records else "abort")
    settings = _local_settings(
        bootstrap=bootstrap,
        database=database,
        table=table,
        window_size_minutes=window_minutes,
        bounded_delay_seconds=bounded_delay_seconds,
        partitions=partitions,
        start_offset=offset,
        poll_timeout_seconds=poll_timeout,
        idle_poll_limit=idle_poll_limit,
        decode_error_policy=policy,
    )
    configure_logging(settings.log_level)

    try:
        engine = build_engine(settings)
    except (TableNotFoundError, SourceUnavailableError) as exc:
        _fail(f"Cannot connect to source: {exc}")
    engine.sink = EchoingSink(engine.sink)

    typer.echo(
        f"Aggregating {settings.database}.{settings.table} "
        f"(window={settings.window_size_minutes}m, delay={settings.bounded_delay_seconds}s, "
        f"partitions={settings.partitions}) ..."
    )
    previous = signal.signal(signal.SIGINT, lambda *_: engine.stop())
    try:
        summary = engine.run()
    except (DecodeError, UpstreamReadError) as exc:
        _fail(f"Run aborted: {exc}")
    finally:
        signal.signal(signal.SIGINT, previous)

    typer.echo()
    render_run(summary.model_dump(mode="json"))


@app.command("peek")
def peek_command(
    bootstrap: Optional[str] = _bootstrap_option(),
    database: Optional[str] = _database_option(),
    table: Optional[str] = _table_option(),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of records to print."
    ),
    empty_poll_limit: Optional[int] = typer.Option(
        None, "--empty-poll-limit", min=1, help="Empty polls before giving up."
    ),
    poll_timeout: Optional[float] = typer.Option(
        None, "--poll-timeout", min=0.0, help="Seconds to wait per poll."
    ),
) -> None:
    """Print raw records from the readings table."""
    settings = _local_settings(
        bootstrap=bootstrap,
        database=database,
        table=table,
        record_limit=limit,
        empty_poll_limit=empty_poll_limit,
        poll_timeout_seconds=poll_timeout,
    )

    try:
        cluster = build_default_cluster(settings.bootstrap, settings.log_root_path)
        source = cluster.get_table(settings.database, settings.table)
    except (TableNotFoundError, SourceUnavailableError) as exc:
        _fail(f"Cannot connect to source: {exc}")

    typer.echo(
        f"Subscribing to {source.num_buckets} buckets for table "
        f"{settings.database}.{settings.table}"
    )
    scanner = source.create_scanner()
    for bucket in range(source.num_buckets):
        scanner.subscribe(bucket, EARLIEST_OFFSET)

    printed = 0
    empty_polls = 0
    while printed < settings.record_limit and empty_polls < settings.empty_poll_limit:
        records = scanner.poll(settings.poll_timeout_seconds)
        if not records:
            empty_polls += 1
            continue
        for record in records[: settings.record_limit - printed]:
            render_record(record)
            printed += 1

    if printed == 0:
        typer.echo("No records found (table might be empty or producer not running).")
    elif printed < settings.record_limit:
        typer.echo(f"Displayed {printed} records (no more records available now).")


@app.command("submit")
def submit_command(
    ctx: typer.Context,
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="JSON-lines file of readings."
    ),
) -> None:
    """Append readings from a JSON-lines file to the source table."""
    state = _get_state(ctx)
    typer.echo(f"Submitting {file} to {state.config.base_url} ...")
    accepted = state.client.submit_readings(file)
    typer.secho(f"Accepted {accepted} readings.", fg=typer.colors.GREEN)


@app.command("trigger")
def trigger_command(
    ctx: typer.Context,
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for the run to finish and display its summary.",
    ),
) -> None:
    """Start an engine run on the service."""
    state = _get_state(ctx)
    run_id = state.client.start_run()
    typer.secho(f"Run started. run_id={run_id}", fg=typer.colors.GREEN)

    if not wait:
        return

    typer.echo(
        f"Waiting for run (interval={state.config.poll_interval}s, "
        f"timeout={state.config.run_timeout}s)..."
    )
    payload = state.client.poll_run(
        run_id, interval=state.config.poll_interval, timeout=state.config.run_timeout
    )
    typer.echo()
    render_run(payload)


@app.command("aggregates")
def aggregates_command(
    ctx: typer.Context,
    sensor_id: Optional[str] = typer.Option(None, "--sensor-id", help="Only this sensor."),
) -> None:
    """List aggregates emitted by the service."""
    state = _get_state(ctx)
    render_aggregates(state.client.list_aggregates(sensor_id=sensor_id))
