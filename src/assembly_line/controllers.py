"""Controllers for assembly line CLI commands."""

from __future__ import annotations

import logging
import queue
import shutil
import threading
from collections import deque
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import assert_never

from assembly_line.board.andon import AndonRegistry
from assembly_line.board.contracts import BoardLayout, from_iso, utc_now
from assembly_line.board.ledger import IdLedger
from assembly_line.board.metrics import (
    build_line_metrics,
    load_completion_records,
    render_metrics_lines,
)
from assembly_line.board.models import (
    BACKLOG,
    DONE,
    Priority,
    station_location,
    station_number,
)
from assembly_line.board.pipeline import AddUnit, PipelineStateMachine, Transition
from assembly_line.board.store import UnitStore
from assembly_line.config import Settings
from assembly_line.supervisor import (
    ProgressCallback,
    SignalOutcome,
    SpawnResult,
    WorkerOutcome,
    WorkerRecordStore,
    WorkerSupervisor,
)

logger = logging.getLogger(__name__)

_SENTINEL = object()
SPIKE_ROUTE = "spike"
WIP_BAR_FILLED = "█"
WIP_BAR_EMPTY = "░"


@dataclass(slots=True)
class InitCommand:
    base_dir: Path | None


@dataclass(slots=True)
class AddCommand:
    """CLI input for creating a backlog unit."""

    base_dir: Path | None
    title: str
    priority: str = Priority.MEDIUM.value
    route: str | None = None


@dataclass(slots=True)
class StartCommand:
    base_dir: Path | None
    unit_id: str


@dataclass(slots=True)
class AdvanceCommand:
    base_dir: Path | None
    unit_id: str


@dataclass(slots=True)
class RejectCommand:
    base_dir: Path | None
    unit_id: str
    target_station: int


@dataclass(slots=True)
class StatusCommand:
    base_dir: Path | None


@dataclass(slots=True)
class AndonListCommand:
    base_dir: Path | None
    include_resolved: bool = False


@dataclass(slots=True)
class AndonRaiseCommand:
    base_dir: Path | None
    unit_id: str
    trigger: str
    station: int | None = None
    question: str | None = None


@dataclass(slots=True)
class AndonResolveCommand:
    base_dir: Path | None
    alert_ref: str
    resolution: str


@dataclass(slots=True)
class SpawnCommand:
    """CLI input for one station worker."""

    base_dir: Path | None
    station: int
    unit_id: str | None = None
    interactive: bool = False
    model: str | None = None
    max_turns: int | None = None
    quiet: bool = False


@dataclass(slots=True)
class SpawnAllCommand:
    base_dir: Path | None
    interactive: bool = False
    model: str | None = None
    max_turns: int | None = None


@dataclass(slots=True)
class LogsCommand:
    base_dir: Path | None
    name_filter: str | None = None
    lines: int = 50


@dataclass(slots=True)
class WorkersCommand:
    base_dir: Path | None


@dataclass(slots=True)
class MetricsCommand:
    base_dir: Path | None


LineCommand = (
    InitCommand
    | AddCommand
    | StartCommand
    | AdvanceCommand
    | RejectCommand
    | StatusCommand
    | AndonListCommand
    | AndonRaiseCommand
    | AndonResolveCommand
    | SpawnCommand
    | SpawnAllCommand
    | LogsCommand
    | WorkersCommand
    | MetricsCommand
)


@dataclass(slots=True)
class LineServices:
    """Components wired for one command invocation."""

    settings: Settings
    layout: BoardLayout
    store: UnitStore
    pipeline: PipelineStateMachine
    andon: AndonRegistry
    records: WorkerRecordStore

    def supervisor(self, on_progress: ProgressCallback | None = None) -> WorkerSupervisor:
        return WorkerSupervisor(
            settings=self.settings,
            store=self.store,
            records=self.records,
            andon=self.andon,
            on_progress=on_progress,
        )


class AssemblyLineCliController:
    """Single entry point mapping each command variant to its handler."""

    def dispatch(self, command: LineCommand) -> Iterable[str]:  # noqa: C901, PLR0911
        if isinstance(command, InitCommand):
            return self.init(command)
        if isinstance(command, AddCommand):
            return self.add(command)
        if isinstance(command, StartCommand):
            return self.start(command)
        if isinstance(command, AdvanceCommand):
            return self.advance(command)
        if isinstance(command, RejectCommand):
            return self.reject(command)
        if isinstance(command, StatusCommand):
            return self.status(command)
        if isinstance(command, AndonListCommand):
            return self.andon_list(command)
        if isinstance(command, AndonRaiseCommand):
            return self.andon_raise(command)
        if isinstance(command, AndonResolveCommand):
            return self.andon_resolve(command)
        if isinstance(command, SpawnCommand):
            return self.spawn(command)
        if isinstance(command, SpawnAllCommand):
            return self.spawn_all(command)
        if isinstance(command, LogsCommand):
            return self.logs(command)
        if isinstance(command, WorkersCommand):
            return self.workers(command)
        if isinstance(command, MetricsCommand):
            return self.metrics(command)
        assert_never(command)

    def init(self, command: InitCommand) -> list[str]:
        with _services(command.base_dir) as services:
            services.store.init_layout()
            layout = services.layout
            lines = [f"Initialized assembly line at {layout.root.resolve()}"]
            for station in services.settings.line.stations:
                path = layout.instructions_path(station.number)
                state = "present" if path.is_file() else "MISSING"
                lines.append(f"  S{station.number} {station.name}: instructions {state} ({path})")
            executable = services.settings.worker.executable
            found = shutil.which(executable) if executable else None
            lines.append(
                f"Worker executable: {executable} "
                f"({'found at ' + found if found else 'not found on PATH'})",
            )
        return lines

    def add(self, command: AddCommand) -> list[str]:
        with _services(command.base_dir) as services:
            unit = services.pipeline.add(
                AddUnit(
                    title=command.title,
                    priority=Priority(command.priority.lower()),
                    route=command.route,
                ),
            )
        return [f"Created {unit.id}: {unit.title} [priority={unit.priority} route={unit.route}]"]

    def start(self, command: StartCommand) -> list[str]:
        with _services(command.base_dir) as services:
            transition = services.pipeline.start(command.unit_id)
        return [f"Started {transition.unit.id}: {_describe_move(transition)}"]

    def advance(self, command: AdvanceCommand) -> list[str]:
        with _services(command.base_dir) as services:
            transition = services.pipeline.advance(command.unit_id)
            origin = transition.from_station
            if origin is not None:
                sentinel = services.layout.completion_sentinel_path(transition.unit.id, origin)
                sentinel.unlink(missing_ok=True)

        lines = [f"Advanced {transition.unit.id}: {_describe_move(transition)}"]
        if transition.is_done:
            if transition.route == SPIKE_ROUTE:
                lines.append("Spike complete (report, not merge).")
            else:
                lines.append(f"{transition.unit.id} is done.")
        return lines

    def reject(self, command: RejectCommand) -> list[str]:
        with _services(command.base_dir) as services:
            transition = services.pipeline.reject(command.unit_id, command.target_station)
        return [f"Rejected {transition.unit.id}: {_describe_move(transition)}"]

    def status(self, command: StatusCommand) -> list[str]:
        with _services(command.base_dir) as services:
            return _render_status(services)

    def andon_list(self, command: AndonListCommand) -> list[str]:
        with _services(command.base_dir) as services:
            alerts = services.andon.list_alerts(include_resolved=command.include_resolved)
        if not alerts:
            return ["No open andon alerts."]
        lines = [f"Andon alerts: {len(alerts)}"]
        for alert in alerts:
            station = f"S{alert.station}" if alert.station is not None else "S-"
            marker = " (resolved)" if alert.resolved else ""
            lines.append(f"{alert.id} {alert.unit_id} {station} [{alert.trigger}]{marker}")
            if alert.question:
                lines.append(f"  Q: {alert.question}")
            if alert.resolved and alert.resolution:
                lines.append(f"  Resolution: {alert.resolution}")
        return lines

    def andon_raise(self, command: AndonRaiseCommand) -> list[str]:
        with _services(command.base_dir) as services:
            if command.station is None:
                stored = services.store.read(command.unit_id)
                station = station_number(stored.location)
            else:
                services.store.read(command.unit_id)
                station = command.station
            alert = services.andon.raise_alert(
                unit_id=command.unit_id,
                station=station,
                trigger=command.trigger,
                question=command.question,
            )
        return [f"Andon raised: {alert.id} for {alert.unit_id} [{alert.trigger}]"]

    def andon_resolve(self, command: AndonResolveCommand) -> list[str]:
        with _services(command.base_dir) as services:
            outcome = services.andon.resolve(command.alert_ref, command.resolution)
        if not outcome.newly_resolved:
            return [f"{outcome.alert.id} already resolved: {outcome.alert.resolution or '-'}"]
        return [f"Resolved {outcome.alert.id}: {outcome.alert.resolution}"]

    def spawn(self, command: SpawnCommand) -> Iterator[str]:
        """Launch one worker and stream its progress until it exits."""

        progress_q: queue.Queue[str | object] = queue.Queue()
        with _services(command.base_dir) as services:
            supervisor = services.supervisor(progress_q.put)
            result = supervisor.spawn(
                command.station,
                command.unit_id,
                interactive=command.interactive,
                model=command.model,
                max_turns=command.max_turns,
                quiet=command.quiet,
            )
            if result is None:
                yield f"No units at {station_location(command.station)}."
                return
            executable = services.settings.worker.executable
            yield from _launch_lines(result, executable=executable)
            if result.handle is None:
                return
            yield from _stream_outcomes([result], progress_q, executable=executable)

    def spawn_all(self, command: SpawnAllCommand) -> Iterator[str]:
        """Launch workers at every station with capacity and wait for all of them."""

        progress_q: queue.Queue[str | object] = queue.Queue()
        with _services(command.base_dir) as services:
            supervisor = services.supervisor(progress_q.put)
            results = supervisor.spawn_all(
                interactive=command.interactive,
                model=command.model,
                max_turns=command.max_turns,
            )
            if not results:
                yield "No eligible units: every station is empty or at capacity."
                return
            executable = services.settings.worker.executable
            for result in results:
                yield from _launch_lines(result, executable=executable)
            headless = [result for result in results if result.handle is not None]
            if headless:
                yield f"Waiting for {len(headless)} worker(s)..."
                yield from _stream_outcomes(headless, progress_q, executable=executable)

    def logs(self, command: LogsCommand) -> list[str]:
        with _services(command.base_dir) as services:
            logs_dir = services.layout.logs_dir
            candidates = (
                [
                    path
                    for path in logs_dir.glob("*.log")
                    if not command.name_filter or command.name_filter in path.name
                ]
                if logs_dir.is_dir()
                else []
            )
        if not candidates:
            suffix = f" matching {command.name_filter!r}" if command.name_filter else ""
            return [f"No worker logs{suffix}."]
        newest = max(candidates, key=lambda path: (path.stat().st_mtime, path.name))
        with newest.open(encoding="utf-8", errors="replace") as handle:
            tail = deque((line.rstrip("\n") for line in handle), maxlen=max(1, command.lines))
        return [f"==> {newest} <==", *tail]

    def workers(self, command: WorkersCommand) -> list[str]:
        with _services(command.base_dir) as services:
            records = services.records.list_records()
        if not records:
            return ["No worker records."]
        now = utc_now()
        lines = [f"Workers: {len(records)}"]
        for record in records:
            age = _minutes_since(record.started, now)
            cost = f"${record.cost_usd:.2f}" if record.cost_usd is not None else "-"
            lines.append(
                f"S{record.station} {record.unit_id} status={record.status.value} "
                f"pid={record.pid} age={age if age is not None else '-'}m cost={cost}",
            )
        return lines

    def metrics(self, command: MetricsCommand) -> list[str]:
        with _services(command.base_dir) as services:
            snapshot = build_line_metrics(
                records=load_completion_records(services.layout),
                line=services.settings.line,
            )
        return render_metrics_lines(snapshot)


def _launch_lines(result: SpawnResult, *, executable: str) -> list[str]:
    record = result.record
    if result.handle is None:
        return [
            f"Interactive session prepared for {result.unit.id} at Station {result.station}",
            f"  System prompt: {result.system_prompt_path}",
            f"  Prompt: {result.prompt_path}",
            f"  Quick start: {executable} --model {record.model} "
            f"--append-system-prompt-file {result.system_prompt_path}",
        ]
    return [
        f"Spawned Station {result.station} worker for {result.unit.id} "
        f"(model: {record.model}, pid: {record.pid})",
        f"  Log: {record.log_file}",
        f"  Prompt: {result.prompt_path}",
    ]


def _stream_outcomes(
    results: list[SpawnResult],
    progress_q: queue.Queue[str | object],
    *,
    executable: str,
) -> Iterator[str]:
    error_holder: list[Exception] = []

    def _run() -> None:
        try:
            for result in results:
                if result.handle is None:
                    continue
                outcome = result.handle.wait()
                for line in _outcome_lines(outcome, executable=executable):
                    progress_q.put(line)
        except Exception as exc:  # noqa: BLE001
            error_holder.append(exc)
        finally:
            progress_q.put(_SENTINEL)

    waiter = threading.Thread(target=_run, daemon=True)
    waiter.start()
    while True:
        item = progress_q.get()
        if item is _SENTINEL:
            break
        yield str(item)
    waiter.join(timeout=10)
    if error_holder:
        raise error_holder[0]


def _outcome_lines(outcome: WorkerOutcome, *, executable: str) -> list[str]:
    tag = f"[S{outcome.station}/{outcome.unit_id}]"
    lines: list[str] = []
    if outcome.signal == SignalOutcome.COMPLETED:
        lines.append(f"{tag} Station {outcome.station} complete.")
        lines.append(f"  run: assembly-line advance {outcome.unit_id}")
    elif outcome.signal == SignalOutcome.ESCALATED:
        alert = outcome.alert
        lines.append(f"{tag} ANDON: {alert.trigger if alert else 'escalation'}")
        if alert is not None and alert.question:
            lines.append(f"  Question: {alert.question}")
        lines.append("  run: assembly-line andon list")
    else:
        lines.append(
            f"{tag} Worker exited (code {outcome.exit_code}) without a completion "
            "or andon signal.",
        )
        lines.append(f"  Log: {outcome.log_path}")
        if outcome.session_id:
            lines.append(f"  Resume: {executable} --resume {outcome.session_id}")
    if outcome.session_id:
        lines.append(
            f"  Session: {outcome.session_id} | Cost: ${outcome.cost_usd or 0:.4f} | "
            f"Turns: {outcome.num_turns or 0}",
        )
    return lines


def _render_status(services: LineServices) -> list[str]:
    line = services.settings.line
    store = services.store
    now = utc_now()
    lines = ["Assembly Line Status", f"Backlog: {store.count(BACKLOG)}"]
    for station in line.stations:
        location = station_location(station.number)
        units = store.list_by_location(location)
        filled = min(len(units), station.wip_limit)
        bar = WIP_BAR_FILLED * filled + WIP_BAR_EMPTY * (station.wip_limit - filled)
        mode = " parallel" if station.parallel else ""
        lines.append(
            f"S{station.number} {station.name} [{bar}] {len(units)}/{station.wip_limit}{mode}",
        )
        for unit in units:
            age = _minutes_since(unit.last_transition_at, now)
            age_text = "-" if age is None else f"{age}m"
            over = " OVER" if age is not None and age > station.target_cycle_minutes else ""
            record = services.records.read(unit.id, station.number)
            worker = f" [{record.status.value}]" if record is not None else ""
            route = f" ({unit.route})" if unit.route != line.default_route else ""
            lines.append(f"  {unit.id} {unit.title} {age_text}{over}{worker}{route}")
    lines.append(f"Done: {store.count(DONE)}")

    signals = _pending_signals(services.layout)
    if signals:
        lines.append("Pending signals:")
        lines.extend(f"  {signal}" for signal in signals)
    open_alerts = services.andon.list_alerts()
    if open_alerts:
        lines.append(f"Open andon alerts: {len(open_alerts)}")
    return lines


def _pending_signals(layout: BoardLayout) -> list[str]:
    workers_dir = layout.workers_dir
    if not workers_dir.is_dir():
        return []
    signals: list[str] = []
    for path in sorted(workers_dir.glob("DONE-*.json")):
        signals.append(f"DONE {path.stem.removeprefix('DONE-')}")
    for path in sorted(workers_dir.glob("ANDON-*.json")):
        signals.append(f"ANDON {path.stem.removeprefix('ANDON-')}")
    return signals


def _describe_move(transition: Transition) -> str:
    text = f"{_short(transition.from_location)} -> {_short(transition.to_location)}"
    if transition.skipped:
        text += f" (skipping {', '.join(f'S{number}' for number in transition.skipped)})"
    if transition.wip is not None and transition.wip_limit is not None:
        text += f" [{transition.wip}/{transition.wip_limit} WIP]"
    return text


def _short(location: str) -> str:
    number = station_number(location)
    return f"S{number}" if number is not None else location


def _minutes_since(timestamp: str | None, now: datetime) -> int | None:
    if not timestamp:
        return None
    try:
        started = from_iso(timestamp)
    except ValueError:
        return None
    return int((now - started).total_seconds() // 60)


@contextmanager
def _services(base_dir: Path | None) -> Iterator[LineServices]:
    settings = Settings.from_env(base_dir=base_dir)
    settings.validate()
    layout = BoardLayout(settings.base_dir)
    ledger = IdLedger(settings.ledger_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store = UnitStore(layout, station_numbers=settings.line.station_numbers, ledger=ledger)
    try:
        yield LineServices(
            settings=settings,
            layout=layout,
            store=store,
            pipeline=PipelineStateMachine(store=store, line=settings.line),
            andon=AndonRegistry(layout),
            records=WorkerRecordStore(layout),
        )
    finally:
        ledger.close()
