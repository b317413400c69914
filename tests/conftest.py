"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from assembly_line.board.andon import AndonRegistry
from assembly_line.board.contracts import BoardLayout, utc_now_iso
from assembly_line.board.ledger import IdLedger
from assembly_line.board.models import HistoryEntry, Unit
from assembly_line.board.pipeline import PipelineStateMachine
from assembly_line.board.store import UnitStore
from assembly_line.config import Settings
from assembly_line.supervisor import WorkerRecordStore, WorkerSupervisor

ECHO_AGENT_COMMAND = f"{shlex.quote(sys.executable)} -m assembly_line.supervisor.echo_agent"
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def echo_agent_template(*flags: str) -> str:
    """Worker command template running the local echo agent with extra flags."""

    return " ".join([ECHO_AGENT_COMMAND, *(shlex.quote(flag) for flag in flags), "{prompt}"])


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    base = tmp_path / ".assembly-line"
    monkeypatch.setenv("ASSEMBLY_LINE_DIR", str(base))
    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(_SRC_DIR), pythonpath]) if pythonpath else str(_SRC_DIR),
    )
    return base


@pytest.fixture()
def settings(base_dir: Path) -> Settings:
    return Settings(base_dir=base_dir)


@pytest.fixture()
def layout(settings: Settings) -> BoardLayout:
    return BoardLayout(settings.base_dir)


@pytest.fixture()
def ledger(settings: Settings) -> Iterator[IdLedger]:
    id_ledger = IdLedger(settings.ledger_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        yield id_ledger
    finally:
        id_ledger.close()


@pytest.fixture()
def store(settings: Settings, layout: BoardLayout, ledger: IdLedger) -> UnitStore:
    unit_store = UnitStore(layout, station_numbers=settings.line.station_numbers, ledger=ledger)
    unit_store.init_layout()
    return unit_store


@pytest.fixture()
def pipeline(store: UnitStore, settings: Settings) -> PipelineStateMachine:
    return PipelineStateMachine(store=store, line=settings.line)


@pytest.fixture()
def andon(layout: BoardLayout) -> AndonRegistry:
    return AndonRegistry(layout)


@pytest.fixture()
def place_unit(store: UnitStore) -> Callable[..., Unit]:
    """Create a unit directly at a board location, bypassing start/advance."""

    def _place(location: str, unit_id: str | None = None, *, route: str = "standard") -> Unit:
        now = utc_now_iso()
        unit = Unit(
            id=unit_id or store.next_id(),
            title=f"Task at {location}",
            priority="medium",
            route=route,
            status=location,
            created=now,
            history=[HistoryEntry(timestamp=now, event="created")],
        )
        return store.create(unit, location=location).unit

    return _place


@pytest.fixture()
def instructions(layout: BoardLayout, settings: Settings) -> None:
    layout.stations_dir.mkdir(parents=True, exist_ok=True)
    for station in settings.line.stations:
        layout.instructions_path(station.number).write_text(
            f"# Station {station.number}: {station.name}\nDo the work.\n",
            "utf-8",
        )


@pytest.fixture()
def make_supervisor(
    settings: Settings,
    store: UnitStore,
    andon: AndonRegistry,
    layout: BoardLayout,
) -> Callable[..., tuple[WorkerSupervisor, list[str]]]:
    """Build a supervisor running the echo agent with ``flags`` (or a raw template)."""

    def _make(
        *flags: str,
        command_template: str | None = None,
    ) -> tuple[WorkerSupervisor, list[str]]:
        progress: list[str] = []
        worker_settings = replace(
            settings,
            worker=replace(
                settings.worker,
                command_template=command_template or echo_agent_template(*flags),
            ),
        )
        supervisor = WorkerSupervisor(
            settings=worker_settings,
            store=store,
            records=WorkerRecordStore(layout),
            andon=andon,
            on_progress=progress.append,
        )
        return supervisor, progress

    return _make
