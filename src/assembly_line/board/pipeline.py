"""Station pipeline state machine: location transitions, routing and WIP limits."""

from __future__ import annotations

from dataclasses import dataclass, field

from assembly_line.board.contracts import utc_now_iso
from assembly_line.board.models import (
    BACKLOG,
    DONE,
    HistoryEntry,
    Priority,
    Unit,
    station_block_key,
    station_location,
    station_number,
)
from assembly_line.board.store import UnitStore
from assembly_line.config import LineConfig, RouteConfig
from assembly_line.errors import (
    InvalidLocationError,
    InvalidRejectError,
    UnknownStationError,
    WipExceededError,
)


@dataclass(slots=True)
class AddUnit:
    """Input for creating a unit in the backlog."""

    title: str
    priority: Priority = Priority.MEDIUM
    route: str | None = None


@dataclass(slots=True)
class Transition:
    """Outcome of one relocation."""

    unit: Unit
    from_location: str
    to_location: str
    route: str
    wip: int | None = None
    wip_limit: int | None = None
    skipped: tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_done(self) -> bool:
        return self.to_location == DONE

    @property
    def from_station(self) -> int | None:
        return station_number(self.from_location)

    @property
    def to_station(self) -> int | None:
        return station_number(self.to_location)


class PipelineStateMachine:
    """Validates and executes unit transitions against routes and WIP ceilings.

    Each operation is a single relocation plus history append. WIP checks
    read the partition count before moving, without holding a lock.
    """

    def __init__(self, *, store: UnitStore, line: LineConfig) -> None:
        self.store = store
        self.line = line

    def add(self, command: AddUnit) -> Unit:
        title = command.title.strip()
        if not title:
            raise ValueError("Unit title must not be empty.")
        route_name = command.route or self.line.default_route
        if self.line.route(route_name) is None:
            raise ValueError(
                f"Unknown route: {route_name}. Valid: {', '.join(self.line.route_names)}",
            )
        now = utc_now_iso()
        unit = Unit(
            id=self.store.next_id(),
            title=title,
            priority=Priority(command.priority).value,
            route=route_name,
            status=BACKLOG,
            created=now,
            history=[HistoryEntry(timestamp=now, event="created")],
            station_results={
                station_block_key(number): {"rationale": []} for number in self.line.station_numbers
            },
        )
        return self.store.create(unit, location=BACKLOG).unit

    def start(self, unit_id: str) -> Transition:
        """Move a backlog unit to the first station of its route."""

        stored = self.store.read(unit_id)
        if stored.location != BACKLOG:
            raise InvalidLocationError(unit_id, stored.location, "start")
        route = self.line.resolve_route(stored.unit.route)
        first = route.stations[0]
        wip, limit = self._require_capacity(first)
        destination = station_location(first)
        unit = self.store.relocate(unit_id, BACKLOG, destination)
        return Transition(
            unit=unit,
            from_location=BACKLOG,
            to_location=destination,
            route=route.name,
            wip=wip + 1,
            wip_limit=limit,
        )

    def advance(self, unit_id: str) -> Transition:
        """Move a unit to the next station of its route, or to done after the last one."""

        stored = self.store.read(unit_id)
        current = station_number(stored.location)
        if current is None:
            raise InvalidLocationError(unit_id, stored.location, "advance")
        route = self.line.resolve_route(stored.unit.route)
        origin = station_location(current)

        next_station = self.next_station(route, current)
        if next_station is None:
            unit = self.store.relocate(unit_id, origin, DONE)
            return Transition(unit=unit, from_location=origin, to_location=DONE, route=route.name)

        wip, limit = self._require_capacity(next_station)
        destination = station_location(next_station)
        unit = self.store.relocate(unit_id, origin, destination)
        return Transition(
            unit=unit,
            from_location=origin,
            to_location=destination,
            route=route.name,
            wip=wip + 1,
            wip_limit=limit,
            skipped=tuple(range(current + 1, next_station)),
        )

    def reject(self, unit_id: str, target_station: int) -> Transition:
        """Send a unit back to an earlier station for rework.

        The target's WIP limit is deliberately not enforced.
        """

        stored = self.store.read(unit_id)
        current = station_number(stored.location)
        if current is None:
            raise InvalidLocationError(unit_id, stored.location, "reject")
        if target_station >= current:
            raise InvalidRejectError(unit_id, current, target_station)
        if self.line.station(target_station) is None:
            raise UnknownStationError(target_station)
        origin = station_location(current)
        destination = station_location(target_station)
        unit = self.store.relocate(unit_id, origin, destination)
        return Transition(
            unit=unit,
            from_location=origin,
            to_location=destination,
            route=self.line.resolve_route(stored.unit.route).name,
            wip=self.store.count(destination),
            wip_limit=self._station_limit(target_station),
        )

    def next_station(self, route: RouteConfig, current: int) -> int | None:
        """Next route station after ``current``; None means the unit is finished.

        A unit resting at a station outside its route (after a reject) continues
        with the first route station beyond its absolute position.
        """

        if current >= self.line.final_station:
            return None
        if current in route.stations:
            index = route.stations.index(current)
            if index == len(route.stations) - 1:
                return None
            return route.stations[index + 1]
        for number in route.stations:
            if number > current:
                return number
        return None

    def _require_capacity(self, station: int) -> tuple[int, int]:
        limit = self._station_limit(station)
        wip = self.store.count(station_location(station))
        if wip >= limit:
            raise WipExceededError(station, wip, limit)
        return wip, limit

    def _station_limit(self, station: int) -> int:
        config = self.line.station(station)
        if config is None:
            raise UnknownStationError(station)
        return config.wip_limit
