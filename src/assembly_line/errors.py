"""Error taxonomy surfaced by pipeline, andon and supervisor operations."""

from __future__ import annotations


class AssemblyLineError(RuntimeError):
    """Base class for errors reported to the operator."""


class NotFoundError(AssemblyLineError):
    """A unit, alert, or station instruction is missing."""


class UnitNotFoundError(NotFoundError):
    def __init__(self, unit_id: str) -> None:
        super().__init__(f"{unit_id} not found.")
        self.unit_id = unit_id


class AlertNotFoundError(NotFoundError):
    def __init__(self, alert_ref: str) -> None:
        super().__init__(f"Andon alert not found: {alert_ref}")
        self.alert_ref = alert_ref


class MissingInstructionsError(NotFoundError):
    """Station work instruction is absent, so no task can be issued."""

    def __init__(self, station: int, path: object) -> None:
        super().__init__(f"Missing work instruction for station {station}: {path}")
        self.station = station
        self.path = path


class UnknownStationError(AssemblyLineError):
    def __init__(self, station: int) -> None:
        super().__init__(f"Unknown station: {station}")
        self.station = station


class InvalidLocationError(AssemblyLineError):
    """Operation attempted from a location that does not permit it."""

    def __init__(self, unit_id: str, location: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} {unit_id}: unit is at {location}.")
        self.unit_id = unit_id
        self.location = location
        self.operation = operation


class WipExceededError(AssemblyLineError):
    """Destination station is at capacity."""

    def __init__(self, station: int, wip: int, limit: int) -> None:
        super().__init__(f"Station {station} at WIP limit ({wip}/{limit}).")
        self.station = station
        self.wip = wip
        self.limit = limit


class InvalidRejectError(AssemblyLineError):
    """Reject target is not strictly earlier than the current station."""

    def __init__(self, unit_id: str, current: int, target: int) -> None:
        super().__init__(
            f"Cannot reject {unit_id} from station {current} to station {target}: "
            "target must be an earlier station.",
        )
        self.unit_id = unit_id
        self.current = current
        self.target = target


class StationMismatchError(AssemblyLineError):
    """Explicit unit id is not present at the requested station."""

    def __init__(self, unit_id: str, location: str, station: int) -> None:
        super().__init__(f"{unit_id} is at {location}, not station-{station}.")
        self.unit_id = unit_id
        self.location = location
        self.station = station


class ProcessLaunchError(AssemblyLineError):
    """External worker executable not found or failed to start."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command
