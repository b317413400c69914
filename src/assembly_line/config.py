"""Runtime configuration for the assembly line controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_WORKER_COMMAND = (
    "claude -p {prompt} --model {model} --max-turns {max_turns} "
    "--output-format stream-json --verbose --permission-mode {permission_mode} "
    "--append-system-prompt-file {system_prompt_file} --allowedTools {allowed_tools}"
)
PROMPT_PLACEHOLDERS = ("{prompt}", "{prompt_file}")


@dataclass(frozen=True, slots=True)
class StationConfig:
    """One static pipeline stage."""

    number: int
    name: str
    wip_limit: int
    parallel: bool = False
    target_cycle_minutes: int = 30


@dataclass(frozen=True, slots=True)
class RouteConfig:
    """Named ordered subsequence of stations."""

    name: str
    stations: tuple[int, ...]
    description: str = ""


DEFAULT_STATIONS = (
    StationConfig(1, "Requirements Intake", wip_limit=3, target_cycle_minutes=15),
    StationConfig(2, "Architecture & Design", wip_limit=2, target_cycle_minutes=30),
    StationConfig(3, "Implementation", wip_limit=3, parallel=True, target_cycle_minutes=60),
    StationConfig(4, "Testing", wip_limit=3, parallel=True, target_cycle_minutes=30),
    StationConfig(5, "Code Review", wip_limit=2, target_cycle_minutes=15),
    StationConfig(6, "Integration & Merge", wip_limit=1, target_cycle_minutes=10),
)

DEFAULT_ROUTES = (
    RouteConfig("standard", (1, 2, 3, 4, 5, 6), "Full pipeline: features, large changes"),
    RouteConfig("fast", (1, 3, 4, 5, 6), "Skip design: bug fixes, small changes, config"),
    RouteConfig("spike", (1, 3), "Explore only: produces a report, not a merge"),
)


@dataclass(frozen=True, slots=True)
class LineConfig:
    """Station table and routes, constructed once and never mutated."""

    stations: tuple[StationConfig, ...] = DEFAULT_STATIONS
    routes: tuple[RouteConfig, ...] = DEFAULT_ROUTES
    default_route: str = "standard"
    quality_gate_stations: tuple[int, ...] = (4, 5)

    @property
    def station_numbers(self) -> tuple[int, ...]:
        return tuple(station.number for station in self.stations)

    @property
    def final_station(self) -> int:
        return max(self.station_numbers)

    @property
    def route_names(self) -> tuple[str, ...]:
        return tuple(route.name for route in self.routes)

    def station(self, number: int) -> StationConfig | None:
        """Return station config by absolute number."""

        for station in self.stations:
            if station.number == number:
                return station
        return None

    def route(self, name: str | None) -> RouteConfig | None:
        """Return route config by name without fallback."""

        for route in self.routes:
            if route.name == name:
                return route
        return None

    def resolve_route(self, name: str | None) -> RouteConfig:
        """Return the named route, falling back to the default route when unknown."""

        route = self.route(name)
        if route is not None:
            return route
        fallback = self.route(self.default_route)
        if fallback is None:
            raise ValueError(f"Default route is not configured: {self.default_route!r}")
        return fallback

    def validate(self) -> None:
        """Raise configuration error if the station table or routes are inconsistent."""

        numbers = self.station_numbers
        if not numbers:
            raise ValueError("At least one station must be configured.")
        if len(set(numbers)) != len(numbers):
            raise ValueError(f"Duplicate station numbers: {numbers}")
        for station in self.stations:
            if station.number < 1:
                raise ValueError(f"Station numbers must be >= 1: {station.number}")
            if station.wip_limit <= 0:
                raise ValueError(
                    f"Station {station.number} WIP limit must be > 0: {station.wip_limit}",
                )
        known = set(numbers)
        for route in self.routes:
            if not route.stations:
                raise ValueError(f"Route {route.name!r} must list at least one station.")
            unknown = [number for number in route.stations if number not in known]
            if unknown:
                raise ValueError(f"Route {route.name!r} references unknown stations: {unknown}")
            if list(route.stations) != sorted(set(route.stations)):
                raise ValueError(
                    f"Route {route.name!r} must visit stations in increasing order "
                    f"without revisiting: {route.stations}",
                )
        if self.route(self.default_route) is None:
            raise ValueError(f"Default route is not configured: {self.default_route!r}")
        for number in self.quality_gate_stations:
            if number not in known:
                raise ValueError(f"Quality gate station is not configured: {number}")


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    """External worker execution parameters."""

    model: str = "sonnet"
    max_turns: int = 50
    permission_mode: str = "acceptEdits"
    command_template: str = DEFAULT_WORKER_COMMAND
    allowed_tools: str = "Read,Write,Edit,Bash,Grep,Glob"

    @property
    def executable(self) -> str:
        """First token of the command template."""

        parts = self.command_template.split(maxsplit=1)
        return parts[0] if parts else ""


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings grouped by concern."""

    base_dir: Path = Path(".assembly-line")
    line: LineConfig = field(default_factory=LineConfig)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    sqlite_busy_timeout_ms: int = 5_000

    @property
    def ledger_path(self) -> Path:
        return self.base_dir / "ledger.db"

    @classmethod
    def from_env(cls, base_dir: Path | None = None) -> Settings:
        """Load settings from environment with fixed defaults."""

        return cls(
            base_dir=base_dir or Path(os.getenv("ASSEMBLY_LINE_DIR", ".assembly-line")),
            worker=WorkerSettings(
                model=os.getenv("ASSEMBLY_LINE_MODEL", "sonnet"),
                max_turns=_env_int("ASSEMBLY_LINE_MAX_TURNS", 50),
                permission_mode=os.getenv("ASSEMBLY_LINE_PERMISSION_MODE", "acceptEdits"),
                command_template=os.getenv("ASSEMBLY_LINE_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                allowed_tools=os.getenv(
                    "ASSEMBLY_LINE_ALLOWED_TOOLS",
                    "Read,Write,Edit,Bash,Grep,Glob",
                ),
            ),
            sqlite_busy_timeout_ms=_env_int("ASSEMBLY_LINE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        self.line.validate()
        if self.worker.max_turns <= 0:
            raise ValueError("ASSEMBLY_LINE_MAX_TURNS must be > 0.")
        if not self.worker.model.strip():
            raise ValueError("ASSEMBLY_LINE_MODEL must not be empty.")
        template = self.worker.command_template.strip()
        if not template:
            raise ValueError("ASSEMBLY_LINE_WORKER_COMMAND must not be empty.")
        if not any(placeholder in template for placeholder in PROMPT_PLACEHOLDERS):
            raise ValueError(
                "ASSEMBLY_LINE_WORKER_COMMAND must include {prompt} or {prompt_file}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ASSEMBLY_LINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
