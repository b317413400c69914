"""Domain models for units, worker records and andon alerts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

BACKLOG = "backlog"
DONE = "done"
_STATION_PREFIX = "station-"
_STATION_BLOCK_PREFIX = "station_"


class Priority(str, Enum):
    """Unit priority accepted at creation time."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WorkerStatus(str, Enum):
    """WorkerRecord lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    INTERACTIVE = "interactive"


def station_location(number: int) -> str:
    """Board location name for an absolute station number."""

    return f"{_STATION_PREFIX}{number}"


def station_number(location: str) -> int | None:
    """Absolute station number for a station location, None for backlog/done."""

    if not location.startswith(_STATION_PREFIX):
        return None
    raw = location[len(_STATION_PREFIX) :]
    if not raw.isdigit():
        return None
    return int(raw)


def station_block_key(number: int) -> str:
    return f"{_STATION_BLOCK_PREFIX}{number}"


@dataclass(slots=True)
class HistoryEntry:
    """One append-only audit entry of a unit."""

    timestamp: str
    event: str
    from_location: str | None = None
    to_location: str | None = None

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"timestamp": self.timestamp, "event": self.event}
        if self.from_location is not None:
            payload["from"] = self.from_location
        if self.to_location is not None:
            payload["to"] = self.to_location
        return payload

    @classmethod
    def from_document(cls, raw: dict[str, Any]) -> HistoryEntry:
        return cls(
            timestamp=str(raw.get("timestamp", "")),
            event=str(raw.get("event", "moved")),
            from_location=raw.get("from"),
            to_location=raw.get("to"),
        )


@dataclass(slots=True)
class Unit:
    """Work item moving through the pipeline.

    ``station_results`` holds the free-form ``station_N`` blocks written by
    workers; ``extra`` keeps any other top-level keys so a rewrite never drops
    data the controller does not understand.
    """

    id: str
    title: str
    priority: str
    route: str
    status: str
    created: str
    history: list[HistoryEntry] = field(default_factory=list)
    station_results: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def last_transition_at(self) -> str | None:
        if not self.history:
            return None
        return self.history[-1].timestamp

    def station_result(self, number: int) -> dict[str, Any]:
        block = self.station_results.get(station_block_key(number))
        return block if isinstance(block, dict) else {}

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(self.station_results)
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "priority": self.priority,
                "route": self.route,
                "status": self.status,
                "created": self.created,
                "history": [entry.to_document() for entry in self.history],
            },
        )
        return payload

    @classmethod
    def from_document(cls, raw: dict[str, Any]) -> Unit:
        unit_id = raw.get("id")
        if not isinstance(unit_id, str) or not unit_id.strip():
            raise ValueError("unit.id must be a non-empty string")
        raw_history = raw.get("history", [])
        if not isinstance(raw_history, list):
            raise TypeError("unit.history must be an array")
        known = {"id", "title", "priority", "route", "status", "created", "history"}
        station_results = {
            key: value
            for key, value in raw.items()
            if key.startswith(_STATION_BLOCK_PREFIX) and key not in known
        }
        extra = {
            key: value
            for key, value in raw.items()
            if key not in known and key not in station_results
        }
        return cls(
            id=unit_id,
            title=str(raw.get("title", "")),
            priority=str(raw.get("priority", Priority.MEDIUM.value)),
            route=str(raw.get("route", "")),
            status=str(raw.get("status", "")),
            created=str(raw.get("created", "")),
            history=[
                HistoryEntry.from_document(entry)
                for entry in raw_history
                if isinstance(entry, dict)
            ],
            station_results=station_results,
            extra=extra,
        )


@dataclass(slots=True)
class WorkerRecord:
    """Ephemeral state of one spawned worker instance."""

    station: int
    unit_id: str
    pid: int | str
    started: str
    status: WorkerStatus
    mode: str = "headless"
    model: str | None = None
    log_file: str | None = None
    session_id: str | None = None
    completed: str | None = None
    cost_usd: float | None = None
    num_turns: int | None = None
    exit_code: int | None = None
    exited: str | None = None

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "station": self.station,
            "unit_id": self.unit_id,
            "pid": self.pid,
            "started": self.started,
            "status": self.status.value,
            "mode": self.mode,
        }
        optional = {
            "model": self.model,
            "log_file": self.log_file,
            "session_id": self.session_id,
            "completed": self.completed,
            "cost_usd": self.cost_usd,
            "num_turns": self.num_turns,
            "exit_code": self.exit_code,
            "exited": self.exited,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_document(cls, raw: dict[str, Any]) -> WorkerRecord:
        try:
            status = WorkerStatus(str(raw.get("status", WorkerStatus.RUNNING.value)))
        except ValueError as error:
            raise ValueError(f"Unsupported worker status: {raw.get('status')!r}") from error
        cost = raw.get("cost_usd")
        turns = raw.get("num_turns")
        exit_code = raw.get("exit_code")
        return cls(
            station=int(raw["station"]),
            unit_id=str(raw["unit_id"]),
            pid=raw.get("pid", ""),
            started=str(raw.get("started", "")),
            status=status,
            mode=str(raw.get("mode", "headless")),
            model=raw.get("model"),
            log_file=raw.get("log_file"),
            session_id=raw.get("session_id"),
            completed=raw.get("completed"),
            cost_usd=float(cost) if isinstance(cost, int | float) else None,
            num_turns=int(turns) if isinstance(turns, int) else None,
            exit_code=int(exit_code) if isinstance(exit_code, int) else None,
            exited=raw.get("exited"),
        )


@dataclass(slots=True)
class AndonAlert:
    """Escalation record raised by a worker sentinel or manually."""

    id: str
    unit_id: str
    station: int | None
    trigger: str
    timestamp: str
    question: str | None = None
    context: Any = None
    resolved: bool = False
    resolution: str | None = None
    resolved_at: str | None = None

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "unit_id": self.unit_id,
            "station": self.station,
            "trigger": self.trigger,
            "timestamp": self.timestamp,
            "resolved": self.resolved,
        }
        optional = {
            "question": self.question,
            "context": self.context,
            "resolution": self.resolution,
            "resolved_at": self.resolved_at,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @classmethod
    def from_document(cls, raw: dict[str, Any], *, default_id: str) -> AndonAlert:
        """Parse an alert; sentinel files written by workers may omit ``id``
        and use ``unit`` instead of ``unit_id``."""

        station_raw = raw.get("station")
        try:
            station = int(station_raw) if station_raw is not None else None
        except (TypeError, ValueError):
            station = None
        return cls(
            id=str(raw.get("id") or default_id),
            unit_id=str(raw.get("unit_id") or raw.get("unit") or ""),
            station=station,
            trigger=str(raw.get("trigger", "")),
            timestamp=str(raw.get("timestamp", "")),
            question=raw.get("question"),
            context=raw.get("context"),
            resolved=raw.get("resolved") is True,
            resolution=raw.get("resolution"),
            resolved_at=raw.get("resolved_at"),
        )
