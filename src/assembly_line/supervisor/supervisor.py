"""Worker supervision: spawn, stream consumption and sentinel resolution."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

from assembly_line.board.andon import AndonRegistry
from assembly_line.board.contracts import BoardLayout, utc_now, utc_now_iso
from assembly_line.board.models import (
    AndonAlert,
    Unit,
    WorkerRecord,
    WorkerStatus,
    station_location,
)
from assembly_line.board.store import UnitStore
from assembly_line.config import Settings, StationConfig
from assembly_line.errors import StationMismatchError, UnknownStationError
from assembly_line.supervisor.backend import LaunchRequest, launch_worker
from assembly_line.supervisor.events import (
    AssistantEvent,
    MalformedLine,
    ResultEvent,
    StreamDecoder,
    StreamEvent,
)
from assembly_line.supervisor.prompts import build_worker_prompt, render_prompt_file
from assembly_line.supervisor.records import WorkerRecordStore

logger = logging.getLogger(__name__)

INTERACTIVE_PID = "manual"
_READ_CHUNK = 65_536

ProgressCallback = Callable[[str], None]


class SignalOutcome(str, Enum):
    """Which sentinel, if any, the worker left behind."""

    COMPLETED = "completed"
    ESCALATED = "escalated"
    NO_SIGNAL = "no_signal"


@dataclass(slots=True)
class WorkerOutcome:
    station: int
    unit_id: str
    signal: SignalOutcome
    exit_code: int
    log_path: Path
    session_id: str | None = None
    cost_usd: float | None = None
    num_turns: int | None = None
    alert: AndonAlert | None = None


@dataclass(slots=True)
class SpawnResult:
    """One prepared assignment; ``handle`` is set only for headless launches."""

    station: int
    unit: Unit
    record: WorkerRecord
    system_prompt_path: Path
    prompt_path: Path
    handle: WorkerHandle | None = None

    @property
    def interactive(self) -> bool:
        return self.handle is None


class WorkerHandle:
    """Owns one running worker process and the threads draining its pipes.

    Stdout is framed into stream events as bytes arrive; stderr is copied
    line by line. Every raw line lands in the per-invocation log.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        process: subprocess.Popen[bytes],
        station: int,
        unit_id: str,
        log_path: Path,
        layout: BoardLayout,
        records: WorkerRecordStore,
        andon: AndonRegistry,
        on_progress: ProgressCallback | None = None,
        quiet: bool = False,
    ) -> None:
        self.process = process
        self.station = station
        self.unit_id = unit_id
        self.log_path = log_path
        self.layout = layout
        self.records = records
        self.andon = andon
        self.on_progress = on_progress
        self.quiet = quiet
        self.result: ResultEvent | None = None
        self._log_lock = threading.Lock()
        self._log = log_path.open("a", encoding="utf-8")
        self._threads = [
            threading.Thread(target=self._pump_stdout, daemon=True),
            threading.Thread(target=self._pump_stderr, daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def tag(self) -> str:
        return f"[S{self.station}/{self.unit_id}]"

    def wait(self) -> WorkerOutcome:
        """Block until the process exits, then resolve its sentinel signal."""

        exit_code = self.process.wait()
        for thread in self._threads:
            thread.join()
        result = self.result
        with self._log_lock:
            self._log.write(
                f"# Exit: {exit_code} | Session: {result.session_id if result else '-'} | "
                f"Cost: ${result.cost_usd if result else 0:.4f} | "
                f"Turns: {result.num_turns if result else 0} | {utc_now_iso()}\n",
            )
            self._log.close()

        exited = utc_now_iso()

        def _record_exit(record: WorkerRecord) -> None:
            record.exit_code = exit_code
            record.exited = exited

        self.records.update(self.unit_id, self.station, _record_exit)

        outcome = WorkerOutcome(
            station=self.station,
            unit_id=self.unit_id,
            signal=SignalOutcome.NO_SIGNAL,
            exit_code=exit_code,
            log_path=self.log_path,
            session_id=result.session_id if result else None,
            cost_usd=result.cost_usd if result else None,
            num_turns=result.num_turns if result else None,
        )
        if self.layout.completion_sentinel_path(self.unit_id, self.station).exists():
            outcome.signal = SignalOutcome.COMPLETED
        elif self.layout.escalation_sentinel_path(self.unit_id, self.station).exists():
            outcome.signal = SignalOutcome.ESCALATED
            outcome.alert = self.andon.mirror_escalation(self.unit_id, self.station)
        logger.info(
            "Worker %s exited code=%s signal=%s",
            self.tag,
            exit_code,
            outcome.signal.value,
        )
        return outcome

    def _pump_stdout(self) -> None:
        stdout = self.process.stdout
        if stdout is None:
            return
        decoder = StreamDecoder()
        with stdout:
            for chunk in iter(lambda: _read_available(stdout), b""):
                for event in decoder.feed(chunk):
                    self._handle_event(event)
        for event in decoder.close():
            self._handle_event(event)

    def _pump_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        with stderr:
            for raw in iter(stderr.readline, b""):
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._write_log(f"[STDERR] {text}")
                if text.strip():
                    self._progress(f"{self.tag} stderr: {text}")

    def _handle_event(self, event: StreamEvent) -> None:
        self._write_log(event.raw)
        if isinstance(event, ResultEvent):
            self.result = event
            completed = utc_now_iso()

            def _complete(record: WorkerRecord) -> None:
                record.status = WorkerStatus.COMPLETED
                record.session_id = event.session_id
                record.cost_usd = event.cost_usd
                record.num_turns = event.num_turns
                record.completed = completed

            self.records.update(self.unit_id, self.station, _complete)
        elif isinstance(event, AssistantEvent):
            for block in event.blocks:
                self._progress(f"{self.tag} {block.kind}: {block.text}")
        elif isinstance(event, MalformedLine):
            logger.debug(
                "Unparsable worker line from %s (%s): %s",
                self.tag,
                event.reason,
                event.raw,
            )

    def _write_log(self, line: str) -> None:
        with self._log_lock:
            self._log.write(f"{line}\n")
            self._log.flush()

    def _progress(self, message: str) -> None:
        if self.quiet or self.on_progress is None:
            return
        self.on_progress(message)


class WorkerSupervisor:
    """Binds worker processes to (station, unit) assignments."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: UnitStore,
        records: WorkerRecordStore,
        andon: AndonRegistry,
        project_root: Path | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.records = records
        self.andon = andon
        self.layout = store.layout
        self.project_root = project_root or settings.base_dir.resolve().parent
        self.on_progress = on_progress

    def select_unit(self, station: int, unit_id: str | None = None) -> Unit | None:
        """Explicit unit must sit at ``station``; otherwise the first listed unit."""

        location = station_location(station)
        if unit_id is not None:
            stored = self.store.read(unit_id)
            if stored.location != location:
                raise StationMismatchError(unit_id, stored.location, station)
            return stored.unit
        units = self.store.list_by_location(location)
        return units[0] if units else None

    def spawn(  # noqa: PLR0913
        self,
        station: int,
        unit_id: str | None = None,
        *,
        interactive: bool = False,
        model: str | None = None,
        max_turns: int | None = None,
        quiet: bool = False,
    ) -> SpawnResult | None:
        """Prepare and (unless interactive) launch a worker; None if the station is empty."""

        config = self._station(station)
        unit = self.select_unit(station, unit_id)
        if unit is None:
            return None
        return self._spawn_unit(
            config,
            unit,
            interactive=interactive,
            model=model,
            max_turns=max_turns,
            quiet=quiet,
        )

    def spawn_all(
        self,
        *,
        interactive: bool = False,
        model: str | None = None,
        max_turns: int | None = None,
    ) -> list[SpawnResult]:
        """Spawn workers at every station with queued units, within capacity.

        The running count is a snapshot read with no lock held until the
        launches finish, so concurrent invocations can over-spawn. If a later
        launch fails, workers already started are waited on before the error
        propagates, so their records reach a final state.
        """

        spawned: list[SpawnResult] = []
        try:
            self._spawn_queued(
                spawned,
                interactive=interactive,
                model=model,
                max_turns=max_turns,
            )
        except Exception:
            logger.warning("spawn-all aborted after %d launch(es); draining", len(spawned))
            for result in spawned:
                if result.handle is not None:
                    result.handle.wait()
            raise
        return spawned

    def _spawn_queued(
        self,
        spawned: list[SpawnResult],
        *,
        interactive: bool,
        model: str | None,
        max_turns: int | None,
    ) -> None:
        for config in self.settings.line.stations:
            units = self.store.list_by_location(station_location(config.number))
            if not units:
                continue
            running_ids = {
                record.unit_id
                for record in self.records.list_records()
                if record.station == config.number and record.status == WorkerStatus.RUNNING
            }
            queued = [unit for unit in units if unit.id not in running_ids]
            capacity = self.capacity(config, running=len(running_ids), queued=len(queued))
            logger.info(
                "Station %s: queued=%d running=%d spawning=%d",
                config.number,
                len(queued),
                len(running_ids),
                capacity,
            )
            for unit in queued[:capacity]:
                spawned.append(
                    self._spawn_unit(
                        config,
                        unit,
                        interactive=interactive,
                        model=model,
                        max_turns=max_turns,
                        quiet=True,
                    ),
                )

    @staticmethod
    def capacity(config: StationConfig, *, running: int, queued: int) -> int:
        if config.parallel:
            return max(0, min(queued, config.wip_limit - running))
        return 1 if running == 0 and queued > 0 else 0

    def _spawn_unit(  # noqa: PLR0913
        self,
        config: StationConfig,
        unit: Unit,
        *,
        interactive: bool,
        model: str | None,
        max_turns: int | None,
        quiet: bool,
    ) -> SpawnResult:
        worker = self.settings.worker
        chosen_model = model or worker.model
        prompt = build_worker_prompt(
            layout=self.layout,
            station=config,
            unit=unit,
            project_root=self.project_root,
        )
        system_prompt_path = self.layout.system_prompt_path(unit.id, config.number).resolve()
        prompt_path = self.layout.prompt_path(unit.id, config.number).resolve()
        task_path = self.layout.task_path(unit.id, config.number).resolve()
        system_prompt_path.parent.mkdir(parents=True, exist_ok=True)
        system_prompt_path.write_text(prompt.instructions, "utf-8")
        task_path.write_text(prompt.task, "utf-8")
        prompt_path.write_text(
            render_prompt_file(
                task=prompt.task,
                unit_id=unit.id,
                station=config.number,
                model=chosen_model,
                system_prompt_path=system_prompt_path,
                project_root=self.project_root,
                executable=worker.executable,
            ),
            "utf-8",
        )

        if interactive:
            record = WorkerRecord(
                station=config.number,
                unit_id=unit.id,
                pid=INTERACTIVE_PID,
                started=utc_now_iso(),
                status=WorkerStatus.INTERACTIVE,
                mode="interactive",
                model=chosen_model,
            )
            self.records.write(record)
            return SpawnResult(
                station=config.number,
                unit=unit,
                record=record,
                system_prompt_path=system_prompt_path,
                prompt_path=prompt_path,
            )

        started = utc_now()
        log_path = self.layout.log_path(
            unit.id,
            config.number,
            int(started.timestamp() * 1000),
        ).resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        process = launch_worker(
            LaunchRequest(
                command_template=worker.command_template,
                prompt=prompt.task,
                prompt_file=task_path,
                system_prompt_file=system_prompt_path,
                model=chosen_model,
                max_turns=max_turns or worker.max_turns,
                permission_mode=worker.permission_mode,
                allowed_tools=worker.allowed_tools,
                unit_id=unit.id,
                station=config.number,
                base_dir=self.settings.base_dir,
                cwd=self.project_root,
            ),
        )
        log_path.write_text(
            f"# Worker Log | Station {config.number} | {unit.id} | "
            f"{started.isoformat()} | Model: {chosen_model}\n",
            "utf-8",
        )
        record = WorkerRecord(
            station=config.number,
            unit_id=unit.id,
            pid=process.pid,
            started=started.isoformat(),
            status=WorkerStatus.RUNNING,
            model=chosen_model,
            log_file=str(log_path),
        )
        self.records.write(record)
        handle = WorkerHandle(
            process=process,
            station=config.number,
            unit_id=unit.id,
            log_path=log_path,
            layout=self.layout,
            records=self.records,
            andon=self.andon,
            on_progress=self.on_progress,
            quiet=quiet,
        )
        return SpawnResult(
            station=config.number,
            unit=unit,
            record=record,
            system_prompt_path=system_prompt_path,
            prompt_path=prompt_path,
            handle=handle,
        )

    def _station(self, number: int) -> StationConfig:
        config = self.settings.line.station(number)
        if config is None:
            raise UnknownStationError(number)
        return config


def _read_available(stream: IO[bytes]) -> bytes:
    read1 = getattr(stream, "read1", None)
    if read1 is not None:
        return read1(_READ_CHUNK)
    return stream.read(_READ_CHUNK)
