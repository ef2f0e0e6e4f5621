from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the aggregator service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.request_timeout)

    def close(self) -> None:
        self._client.close()

    def submit_readings(self, path: Path) -> int:
        readings = self._load_readings(path)
        try:
            response = self._client.post("/records", json=readings)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        payload = response.json()
        accepted = payload.get("accepted")
        if not isinstance(accepted, int):
            raise typer.BadParameter("Unexpected response payload when submitting readings.")
        return accepted

    def start_run(self) -> str:
        try:
            response = self._client.post("/runs")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        run_id = response.json().get("run_id")
        if not isinstance(run_id, str):
            raise typer.BadParameter("Unexpected response payload when starting a run.")
        return run_id

    def get_run(self, run_id: str) -> Dict[str, Any]:
        try:
            response = self._client.get(f"/runs/{run_id}")
            if response.status_code == 404:
                raise typer.BadParameter(f"Run {run_id} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def poll_run(self, run_id: str, interval: float, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        last_payload: Dict[str, Any] | None = None
        while time.monotonic() <= deadline:
            last_payload = self.get_run(run_id)
            if last_payload.get("status") not in {"queued", "running"}:
                return last_payload
            time.sleep(interval)
        typer.secho(
            (
                f"Timed out waiting for run {run_id}. "
                f"Last status: {last_payload.get('status') if last_payload else 'unknown'}"
            ),
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    def list_aggregates(self, sensor_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"sensor_id": sensor_id} if sensor_id else None
        try:
            response = self._client.get("/aggregates", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    @staticmethod
    def _load_readings(path: Path) -> List[Dict[str, Any]]:
        if not path.is_file():
            raise typer.BadParameter(f"Path {path} is not a file.")
        readings: List[Dict[str, Any]] = []
        with path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    readings.append(json.loads(line))
                except json.JSONDecodeError as exc:
                    raise typer.BadParameter(
                        f"Line {line_number} of {path} is not valid JSON: {exc.msg}"
                    ) from exc
        if not readings:
            raise typer.BadParameter(f"File {path} contains no readings.")
        return readings

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
