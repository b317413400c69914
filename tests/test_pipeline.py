from __future__ import annotations

import allure
import pytest

from assembly_line.board.models import BACKLOG, DONE, Priority
from assembly_line.board.pipeline import AddUnit, PipelineStateMachine
from assembly_line.board.store import UnitStore
from assembly_line.config import DEFAULT_ROUTES
from assembly_line.errors import (
    InvalidLocationError,
    InvalidRejectError,
    UnknownStationError,
    WipExceededError,
)

pytestmark = [
    allure.epic("Board"),
    allure.feature("Pipeline State Machine"),
]


@pytest.mark.parametrize("route", DEFAULT_ROUTES, ids=lambda route: route.name)
def test_advance_visits_route_in_order_then_done(pipeline: PipelineStateMachine, route) -> None:
    unit = pipeline.add(AddUnit(title="Route walk", route=route.name))
    transition = pipeline.start(unit.id)
    visited = [transition.to_station]

    advances = 0
    while not transition.is_done:
        transition = pipeline.advance(unit.id)
        advances += 1
        if not transition.is_done:
            visited.append(transition.to_station)

    assert advances == len(route.stations)
    assert visited == list(route.stations)


def test_start_enforces_first_station_wip_limit(
    pipeline: PipelineStateMachine,
    store: UnitStore,
) -> None:
    units = [pipeline.add(AddUnit(title=f"Unit {index}")) for index in range(4)]
    for unit in units[:3]:
        pipeline.start(unit.id)
    assert store.count("station-1") == 3

    with pytest.raises(WipExceededError) as error:
        pipeline.start(units[3].id)

    assert (error.value.wip, error.value.limit) == (3, 3)
    assert store.count("station-1") == 3
    assert store.read(units[3].id).location == BACKLOG


def test_start_increments_wip_by_one(pipeline: PipelineStateMachine, store: UnitStore) -> None:
    unit = pipeline.add(AddUnit(title="Single"))

    transition = pipeline.start(unit.id)

    assert transition.wip == 1
    assert transition.wip_limit == 3
    assert store.count("station-1") == 1


def test_start_requires_backlog(pipeline: PipelineStateMachine) -> None:
    unit = pipeline.add(AddUnit(title="Twice"))
    pipeline.start(unit.id)

    with pytest.raises(InvalidLocationError):
        pipeline.start(unit.id)


@pytest.mark.parametrize("target", [1, 2, 3, 4, 5, 6])
def test_reject_succeeds_only_for_earlier_station(
    pipeline: PipelineStateMachine,
    store: UnitStore,
    place_unit,
    target: int,
) -> None:
    unit = place_unit("station-5")

    if target < 5:
        transition = pipeline.reject(unit.id, target)
        assert transition.to_location == f"station-{target}"
        assert store.read(unit.id).location == f"station-{target}"
    else:
        with pytest.raises(InvalidRejectError):
            pipeline.reject(unit.id, target)
        assert store.read(unit.id).location == "station-5"


def test_reject_does_not_enforce_target_wip(
    pipeline: PipelineStateMachine,
    store: UnitStore,
    place_unit,
) -> None:
    place_unit("station-2")
    place_unit("station-2")
    unit = place_unit("station-4")

    transition = pipeline.reject(unit.id, 2)

    assert store.count("station-2") == 3
    assert (transition.wip, transition.wip_limit) == (3, 2)


def test_reject_unknown_target_station(pipeline: PipelineStateMachine, place_unit) -> None:
    unit = place_unit("station-3")

    with pytest.raises(UnknownStationError):
        pipeline.reject(unit.id, 0)


def test_reject_from_backlog_is_invalid(pipeline: PipelineStateMachine) -> None:
    unit = pipeline.add(AddUnit(title="Waiting"))

    with pytest.raises(InvalidLocationError):
        pipeline.reject(unit.id, 1)


def test_advance_blocked_by_next_station_wip(
    pipeline: PipelineStateMachine,
    store: UnitStore,
    place_unit,
) -> None:
    first = place_unit("station-5")
    second = place_unit("station-5")
    pipeline.advance(first.id)

    with pytest.raises(WipExceededError):
        pipeline.advance(second.id)

    assert store.read(second.id).location == "station-5"


def test_advance_from_backlog_is_invalid(pipeline: PipelineStateMachine) -> None:
    unit = pipeline.add(AddUnit(title="Not started"))

    with pytest.raises(InvalidLocationError):
        pipeline.advance(unit.id)


def test_advance_off_route_station_continues_with_next_route_station(
    pipeline: PipelineStateMachine,
    place_unit,
) -> None:
    unit = place_unit("station-2", route="fast")

    transition = pipeline.advance(unit.id)

    assert transition.to_location == "station-3"
    assert transition.skipped == ()


def test_spike_finishes_after_station_three(
    pipeline: PipelineStateMachine,
    place_unit,
) -> None:
    unit = place_unit("station-3", route="spike")

    transition = pipeline.advance(unit.id)

    assert transition.is_done
    assert transition.route == "spike"


def test_add_initialises_unit(pipeline: PipelineStateMachine, store: UnitStore) -> None:
    unit = pipeline.add(AddUnit(title="  Fix login bug  ", priority=Priority.HIGH, route="fast"))

    stored = store.read(unit.id)
    assert stored.location == BACKLOG
    assert stored.unit.title == "Fix login bug"
    assert stored.unit.priority == "high"
    assert stored.unit.route == "fast"
    assert stored.unit.station_result(3) == {"rationale": []}
    assert [entry.event for entry in stored.unit.history] == ["created"]


def test_add_rejects_empty_title_and_unknown_route(pipeline: PipelineStateMachine) -> None:
    with pytest.raises(ValueError, match="title"):
        pipeline.add(AddUnit(title="   "))
    with pytest.raises(ValueError, match="Unknown route"):
        pipeline.add(AddUnit(title="Ok", route="turbo"))


def test_fast_route_end_to_end(pipeline: PipelineStateMachine, store: UnitStore) -> None:
    unit = pipeline.add(AddUnit(title="Fix login bug", priority=Priority.HIGH, route="fast"))

    assert pipeline.start(unit.id).to_location == "station-1"
    to_three = pipeline.advance(unit.id)
    assert to_three.to_location == "station-3"
    assert to_three.skipped == (2,)
    assert [pipeline.advance(unit.id).to_location for _ in range(3)] == [
        "station-4",
        "station-5",
        "station-6",
    ]
    assert pipeline.advance(unit.id).to_location == DONE

    stored = store.read(unit.id)
    assert stored.location == DONE
    history = stored.unit.history
    assert len(history) == 7
    assert history[0].event == "created"
    assert [(entry.from_location, entry.to_location) for entry in history[1:]] == [
        (BACKLOG, "station-1"),
        ("station-1", "station-3"),
        ("station-3", "station-4"),
        ("station-4", "station-5"),
        ("station-5", "station-6"),
        ("station-6", DONE),
    ]
