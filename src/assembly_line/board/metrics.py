"""Throughput and quality metrics reduced from completed-unit records."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from assembly_line.board.contracts import BoardLayout, load_json
from assembly_line.board.models import station_block_key
from assembly_line.config import LineConfig

logger = logging.getLogger(__name__)

COMPLETION_SUFFIX = "-complete.json"


@dataclass(slots=True)
class StationCycleMetric:
    """Mean cycle time for one station compared against its target."""

    station: int
    name: str
    sample_size: int
    mean_minutes: float
    target_minutes: int

    @property
    def within_target(self) -> bool:
        return self.mean_minutes <= self.target_minutes


@dataclass(slots=True)
class LineMetricsSnapshot:
    """Aggregated metrics used by the metrics command."""

    completed_units: int
    station_cycle_times: list[StationCycleMetric]
    first_pass_yield: float | None
    total_cost_usd: float


def load_completion_records(layout: BoardLayout) -> list[dict[str, Any]]:
    """Read every terminal record written at the final station."""

    directory = layout.metrics_dir
    if not directory.is_dir():
        return []
    records: list[dict[str, Any]] = []
    for path in sorted(directory.glob(f"*{COMPLETION_SUFFIX}")):
        record = _load_record(path)
        if record is not None:
            records.append(record)
    return records


def build_line_metrics(
    *,
    records: list[dict[str, Any]],
    line: LineConfig,
) -> LineMetricsSnapshot:
    """Build one snapshot; missing fields are excluded, never estimated."""

    samples: dict[int, list[float]] = defaultdict(list)
    for record in records:
        cycle_time = record.get("cycle_time")
        if not isinstance(cycle_time, dict):
            continue
        for station in line.stations:
            value = cycle_time.get(station_block_key(station.number))
            if _is_number(value):
                samples[station.number].append(float(value))

    station_metrics = [
        StationCycleMetric(
            station=station.number,
            name=station.name,
            sample_size=len(samples[station.number]),
            mean_minutes=sum(samples[station.number]) / len(samples[station.number]),
            target_minutes=station.target_cycle_minutes,
        )
        for station in line.stations
        if samples[station.number]
    ]

    first_pass = sum(1 for record in records if _passed_first_attempt(record, line))
    total_cost = sum(
        float(record["cost_usd"]) for record in records if _is_number(record.get("cost_usd"))
    )
    return LineMetricsSnapshot(
        completed_units=len(records),
        station_cycle_times=station_metrics,
        first_pass_yield=(first_pass / len(records)) if records else None,
        total_cost_usd=total_cost,
    )


def render_metrics_lines(snapshot: LineMetricsSnapshot) -> list[str]:
    if snapshot.completed_units == 0:
        return ["No completed units."]
    lines = [f"Metrics: completed_units={snapshot.completed_units}"]
    for metric in snapshot.station_cycle_times:
        marker = "ok" if metric.within_target else "OVER"
        lines.append(
            f"  S{metric.station} {metric.name}: mean={metric.mean_minutes:.0f}m "
            f"target={metric.target_minutes}m samples={metric.sample_size} [{marker}]",
        )
    if snapshot.first_pass_yield is not None:
        lines.append(f"First-pass yield: {snapshot.first_pass_yield:.0%}")
    if snapshot.total_cost_usd:
        lines.append(f"Total cost: ${snapshot.total_cost_usd:.2f}")
    return lines


def _passed_first_attempt(record: dict[str, Any], line: LineConfig) -> bool:
    quality = record.get("quality")
    if not isinstance(quality, dict):
        return False
    return all(
        quality.get(f"{station_block_key(number)}_pass_first_attempt") is True
        for number in line.quality_gate_stations
    )


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _load_record(path: Path) -> dict[str, Any] | None:
    try:
        return load_json(path)
    except (OSError, TypeError, json.JSONDecodeError) as error:
        logger.warning("Skipping unreadable completion record %s: %s", path, error)
        return None
