from __future__ import annotations

import allure
import pytest

from assembly_line.board.contracts import BoardLayout, write_json
from assembly_line.board.metrics import (
    build_line_metrics,
    load_completion_records,
    render_metrics_lines,
)
from assembly_line.config import LineConfig

pytestmark = [
    allure.epic("Board"),
    allure.feature("Metrics Aggregator"),
]


def test_build_line_metrics_excludes_missing_fields(layout: BoardLayout) -> None:
    write_json(
        layout.completion_metrics_path("UNIT-001"),
        {
            "cycle_time": {"station_1": 10, "station_3": 90},
            "quality": {"station_4_pass_first_attempt": True, "station_5_pass_first_attempt": True},
            "cost_usd": 1.5,
        },
    )
    write_json(
        layout.completion_metrics_path("UNIT-002"),
        {
            "cycle_time": {"station_1": 20, "station_3": "n/a"},
            "quality": {
                "station_4_pass_first_attempt": True,
                "station_5_pass_first_attempt": False,
            },
        },
    )
    write_json(
        layout.completion_metrics_path("UNIT-003"),
        {"cost_usd": 0.5},
    )

    records = load_completion_records(layout)
    snapshot = build_line_metrics(records=records, line=LineConfig())

    assert snapshot.completed_units == 3
    by_station = {metric.station: metric for metric in snapshot.station_cycle_times}
    assert set(by_station) == {1, 3}
    assert by_station[1].mean_minutes == pytest.approx(15.0)
    assert by_station[1].sample_size == 2
    assert by_station[1].within_target is True
    assert by_station[3].mean_minutes == pytest.approx(90.0)
    assert by_station[3].sample_size == 1
    assert by_station[3].within_target is False
    assert snapshot.first_pass_yield == pytest.approx(1 / 3)
    assert snapshot.total_cost_usd == pytest.approx(2.0)

    lines = render_metrics_lines(snapshot)
    assert lines[0] == "Metrics: completed_units=3"
    assert any("S3 Implementation" in line and "[OVER]" in line for line in lines)
    assert "First-pass yield: 33%" in lines
    assert "Total cost: $2.00" in lines


def test_metrics_without_records(layout: BoardLayout) -> None:
    snapshot = build_line_metrics(records=load_completion_records(layout), line=LineConfig())

    assert snapshot.completed_units == 0
    assert snapshot.first_pass_yield is None
    assert render_metrics_lines(snapshot) == ["No completed units."]


def test_unreadable_completion_record_is_skipped(layout: BoardLayout) -> None:
    layout.metrics_dir.mkdir(parents=True)
    (layout.metrics_dir / "UNIT-009-complete.json").write_text("[]", "utf-8")
    write_json(layout.completion_metrics_path("UNIT-010"), {"cost_usd": 2})

    records = load_completion_records(layout)

    assert records == [{"cost_usd": 2}]
