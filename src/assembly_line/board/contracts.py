"""File-based contracts: JSON documents and the workspace naming convention."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from assembly_line.board.models import BACKLOG, DONE, station_location

UNIT_SUFFIX = ".json"


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )
    os.replace(tmp_path, path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


@dataclass(frozen=True, slots=True)
class BoardLayout:
    """Deterministic paths inside the workspace directory.

    Workers locate their sentinel files through the same convention, so the
    names here are part of the external contract.
    """

    root: Path

    @property
    def board_dir(self) -> Path:
        return self.root / "board"

    @property
    def andon_dir(self) -> Path:
        return self.root / "andon"

    @property
    def workers_dir(self) -> Path:
        return self.root / "workers"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def metrics_dir(self) -> Path:
        return self.root / "metrics"

    @property
    def stations_dir(self) -> Path:
        return self.root / "stations"

    @property
    def specs_dir(self) -> Path:
        return self.root / "specs"

    @property
    def plans_dir(self) -> Path:
        return self.root / "plans"

    @property
    def reviews_dir(self) -> Path:
        return self.root / "reviews"

    def locations(self, station_numbers: tuple[int, ...]) -> list[str]:
        return [BACKLOG, *(station_location(number) for number in station_numbers), DONE]

    def location_dir(self, location: str) -> Path:
        return self.board_dir / location

    def unit_path(self, unit_id: str, location: str) -> Path:
        return self.location_dir(location) / f"{unit_id}{UNIT_SUFFIX}"

    def all_dirs(self, station_numbers: tuple[int, ...]) -> list[Path]:
        return [
            *(self.location_dir(location) for location in self.locations(station_numbers)),
            self.andon_dir,
            self.workers_dir,
            self.logs_dir,
            self.metrics_dir,
            self.stations_dir,
            self.specs_dir,
            self.plans_dir,
            self.reviews_dir,
        ]

    def instructions_path(self, station: int) -> Path:
        return self.stations_dir / f"station-{station}.md"

    def worker_record_path(self, unit_id: str, station: int) -> Path:
        return self.workers_dir / f"WORKER-{unit_id}-S{station}.json"

    def completion_sentinel_path(self, unit_id: str, station: int) -> Path:
        return self.workers_dir / f"DONE-{unit_id}-station-{station}.json"

    def escalation_sentinel_path(self, unit_id: str, station: int) -> Path:
        return self.workers_dir / f"ANDON-{unit_id}-station-{station}.json"

    def escalation_report_path(self, unit_id: str, station: int) -> Path:
        return self.andon_dir / f"ANDON-{unit_id}-station-{station}.json"

    def system_prompt_path(self, unit_id: str, station: int) -> Path:
        return self.workers_dir / f"SYS-{unit_id}-S{station}.md"

    def prompt_path(self, unit_id: str, station: int) -> Path:
        return self.workers_dir / f"PROMPT-{unit_id}-S{station}.md"

    def task_path(self, unit_id: str, station: int) -> Path:
        return self.workers_dir / f"TASK-{unit_id}-S{station}.md"

    def log_path(self, unit_id: str, station: int, epoch_ms: int) -> Path:
        return self.logs_dir / f"{unit_id}-S{station}-{epoch_ms}.log"

    def completion_metrics_path(self, unit_id: str) -> Path:
        return self.metrics_dir / f"{unit_id}-complete.json"

    def spec_path(self, unit_id: str) -> Path:
        return self.specs_dir / f"{unit_id}.md"

    def plan_path(self, unit_id: str) -> Path:
        return self.plans_dir / f"{unit_id}.md"

    def test_report_path(self, unit_id: str) -> Path:
        return self.reviews_dir / f"{unit_id}-tests.md"

    def review_path(self, unit_id: str) -> Path:
        return self.reviews_dir / f"{unit_id}-review.md"
