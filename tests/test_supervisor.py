from __future__ import annotations

from pathlib import Path

import allure
import pytest

from assembly_line.board.andon import AndonRegistry
from assembly_line.board.contracts import BoardLayout
from assembly_line.board.models import BACKLOG, WorkerStatus
from assembly_line.config import StationConfig
from assembly_line.errors import MissingInstructionsError, ProcessLaunchError, StationMismatchError
from assembly_line.supervisor import SignalOutcome, WorkerSupervisor

pytestmark = [
    allure.epic("Worker Supervision"),
    allure.feature("Spawn and Sentinel Resolution"),
]


@pytest.mark.usefixtures("instructions")
def test_headless_worker_completes_and_updates_record(
    make_supervisor,
    place_unit,
    layout: BoardLayout,
) -> None:
    unit = place_unit("station-1")
    supervisor, progress = make_supervisor(
        "--emit-result",
        "--write-done",
        "--garbage",
        "--stderr",
        "boom",
    )

    result = supervisor.spawn(1)
    assert result is not None
    assert result.handle is not None
    assert result.record.status == WorkerStatus.RUNNING
    outcome = result.handle.wait()

    assert outcome.signal == SignalOutcome.COMPLETED
    assert outcome.exit_code == 0
    assert outcome.session_id == "echo-session"
    record = supervisor.records.read(unit.id, 1)
    assert record is not None
    assert record.status == WorkerStatus.COMPLETED
    assert record.session_id == "echo-session"
    assert record.cost_usd == pytest.approx(0.25)
    assert record.num_turns == 3
    assert record.exit_code == 0
    assert record.completed
    assert record.exited

    log_text = Path(record.log_file).read_text("utf-8")
    assert log_text.startswith(f"# Worker Log | Station 1 | {unit.id} |")
    assert "this is not json" in log_text
    assert "[STDERR] boom" in log_text
    assert "# Exit: 0 | Session: echo-session" in log_text

    tag = f"[S1/{unit.id}]"
    assert f"{tag} tool: Bash: ls -la" in progress
    assert f"{tag} text: Working on {unit.id}" in progress
    assert f"{tag} stderr: boom" in progress
    assert layout.system_prompt_path(unit.id, 1).read_text("utf-8").startswith("# Station 1")


@pytest.mark.usefixtures("instructions")
def test_record_stays_running_without_result_event(make_supervisor, place_unit) -> None:
    unit = place_unit("station-1")
    supervisor, _ = make_supervisor("--exit-code", "0")

    result = supervisor.spawn(1, unit.id)
    outcome = result.handle.wait()

    assert outcome.signal == SignalOutcome.NO_SIGNAL
    assert outcome.session_id is None
    record = supervisor.records.read(unit.id, 1)
    assert record.status == WorkerStatus.RUNNING
    assert record.exit_code == 0
    assert record.session_id is None


@pytest.mark.usefixtures("instructions")
def test_result_event_completes_record_despite_failing_exit(make_supervisor, place_unit) -> None:
    unit = place_unit("station-1")
    supervisor, _ = make_supervisor("--emit-result", "--exit-code", "3")

    outcome = supervisor.spawn(1, unit.id).handle.wait()

    assert outcome.exit_code == 3
    assert outcome.signal == SignalOutcome.NO_SIGNAL
    record = supervisor.records.read(unit.id, 1)
    assert record.status == WorkerStatus.COMPLETED
    assert record.exit_code == 3


@pytest.mark.usefixtures("instructions")
def test_unterminated_result_line_leaves_record_running(make_supervisor, place_unit) -> None:
    unit = place_unit("station-1")
    supervisor, _ = make_supervisor("--emit-result", "--partial", "--cost", "1.5")

    outcome = supervisor.spawn(1, unit.id).handle.wait()

    assert outcome.cost_usd is None
    assert outcome.session_id is None
    record = supervisor.records.read(unit.id, 1)
    assert record.status == WorkerStatus.RUNNING
    assert record.exit_code == 0
    assert record.session_id is None
    assert '"type": "result"' in Path(record.log_file).read_text("utf-8")


@pytest.mark.usefixtures("instructions")
def test_escalation_sentinel_is_mirrored_into_andon(
    make_supervisor,
    place_unit,
    layout: BoardLayout,
    andon: AndonRegistry,
) -> None:
    unit = place_unit("station-3")
    supervisor, _ = make_supervisor(
        "--write-andon",
        "ambiguous_requirement",
        "--question",
        "Which API?",
    )

    outcome = supervisor.spawn(3).handle.wait()

    assert outcome.signal == SignalOutcome.ESCALATED
    assert outcome.alert is not None
    assert outcome.alert.trigger == "ambiguous_requirement"
    assert outcome.alert.question == "Which API?"
    assert layout.escalation_report_path(unit.id, 3).exists()
    assert [alert.unit_id for alert in andon.list_alerts()] == [unit.id]


@pytest.mark.usefixtures("instructions")
def test_explicit_unit_must_be_at_station(make_supervisor, place_unit) -> None:
    unit = place_unit("station-1")
    supervisor, _ = make_supervisor("--emit-result")

    with pytest.raises(StationMismatchError) as error:
        supervisor.spawn(3, unit.id)

    assert error.value.location == "station-1"


@pytest.mark.usefixtures("instructions")
def test_empty_station_spawns_nothing(make_supervisor, place_unit) -> None:
    place_unit(BACKLOG)
    supervisor, _ = make_supervisor("--emit-result")

    assert supervisor.spawn(2) is None


def test_missing_instructions_abort_before_launch(make_supervisor, place_unit) -> None:
    unit = place_unit("station-2")
    supervisor, _ = make_supervisor("--emit-result")

    with pytest.raises(MissingInstructionsError):
        supervisor.spawn(2)

    assert supervisor.records.read(unit.id, 2) is None


@pytest.mark.usefixtures("instructions")
def test_launch_failure_leaves_no_record(make_supervisor, place_unit) -> None:
    unit = place_unit("station-1")
    supervisor, _ = make_supervisor(
        command_template="assembly-line-no-such-worker-binary {prompt}",
    )

    with pytest.raises(ProcessLaunchError):
        supervisor.spawn(1)

    assert supervisor.records.read(unit.id, 1) is None


@pytest.mark.usefixtures("instructions")
def test_interactive_mode_prepares_prompts_only(
    make_supervisor,
    place_unit,
    layout: BoardLayout,
) -> None:
    unit = place_unit("station-2")
    supervisor, _ = make_supervisor("--emit-result")

    result = supervisor.spawn(2, interactive=True, model="opus")

    assert result.interactive
    assert result.record.pid == "manual"
    assert result.record.status == WorkerStatus.INTERACTIVE
    assert result.record.model == "opus"
    prompt = result.prompt_path.read_text("utf-8")
    assert "Quick Start (Interactive)" in prompt
    assert str(layout.completion_sentinel_path(unit.id, 2).resolve()) in prompt
    stored = supervisor.records.read(unit.id, 2)
    assert stored.status == WorkerStatus.INTERACTIVE


@pytest.mark.usefixtures("instructions")
def test_spawn_all_respects_parallel_capacity(
    make_supervisor,
    place_unit,
    tmp_path: Path,
) -> None:
    first = place_unit("station-3")
    second = place_unit("station-3")
    release = tmp_path / "release"
    supervisor, _ = make_supervisor(
        "--wait-for",
        str(release),
        "--emit-result",
        "--write-done",
    )

    spawned = supervisor.spawn_all()
    try:
        assert sorted(result.unit.id for result in spawned) == [first.id, second.id]
        assert {result.station for result in spawned} == {3}
        assert supervisor.records.running_count(3) == 2

        assert supervisor.spawn_all() == []
    finally:
        release.write_text("go", "utf-8")
        outcomes = [result.handle.wait() for result in spawned]

    assert [outcome.signal for outcome in outcomes] == [SignalOutcome.COMPLETED] * 2
    assert supervisor.records.running_count(3) == 0


@pytest.mark.usefixtures("instructions")
def test_spawn_all_serial_station_launches_one(make_supervisor, place_unit) -> None:
    place_unit("station-1")
    place_unit("station-1")
    supervisor, _ = make_supervisor("--emit-result", "--write-done")

    spawned = supervisor.spawn_all()
    outcomes = [result.handle.wait() for result in spawned]

    assert len(spawned) == 1
    assert outcomes[0].signal == SignalOutcome.COMPLETED


def test_spawn_all_waits_for_launched_workers_when_later_station_fails(
    make_supervisor,
    place_unit,
    layout: BoardLayout,
) -> None:
    layout.stations_dir.mkdir(parents=True, exist_ok=True)
    layout.instructions_path(1).write_text("# Station 1\nDo the work.\n", "utf-8")
    first = place_unit("station-1")
    third = place_unit("station-3")
    supervisor, _ = make_supervisor("--emit-result", "--write-done")

    with pytest.raises(MissingInstructionsError):
        supervisor.spawn_all()

    record = supervisor.records.read(first.id, 1)
    assert record is not None
    assert record.status == WorkerStatus.COMPLETED
    assert record.exit_code == 0
    assert record.exited
    assert "# Exit: 0" in Path(record.log_file).read_text("utf-8")
    assert supervisor.records.read(third.id, 3) is None
    assert supervisor.records.running_count(1) == 0


@pytest.mark.parametrize(
    ("parallel", "running", "queued", "expected"),
    [
        (True, 0, 2, 2),
        (True, 2, 5, 1),
        (True, 3, 1, 0),
        (True, 4, 1, 0),
        (False, 0, 3, 1),
        (False, 1, 3, 0),
        (False, 0, 0, 0),
    ],
)
def test_capacity_rules(parallel: bool, running: int, queued: int, expected: int) -> None:
    config = StationConfig(9, "Test", wip_limit=3, parallel=parallel)

    assert WorkerSupervisor.capacity(config, running=running, queued=queued) == expected
