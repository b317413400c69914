"""Station instructions and per-unit task text handed to workers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from assembly_line.board.contracts import BoardLayout
from assembly_line.board.models import Unit, station_location
from assembly_line.config import StationConfig
from assembly_line.errors import MissingInstructionsError

_BRANCH_SLUG = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class WorkerPrompt:
    """Instructions (system prompt) and task text for one assignment."""

    instructions: str
    task: str


def load_instructions(layout: BoardLayout, station: int) -> str:
    path = layout.instructions_path(station)
    if not path.is_file():
        raise MissingInstructionsError(station, path)
    return path.read_text("utf-8")


def build_worker_prompt(
    *,
    layout: BoardLayout,
    station: StationConfig,
    unit: Unit,
    project_root: Path,
) -> WorkerPrompt:
    return WorkerPrompt(
        instructions=load_instructions(layout, station.number),
        task=build_task_text(
            layout=layout,
            station=station,
            unit=unit,
            project_root=project_root,
        ),
    )


def build_task_text(
    *,
    layout: BoardLayout,
    station: StationConfig,
    unit: Unit,
    project_root: Path,
) -> str:
    """Compose the unit-specific task, including the sentinel contract."""

    root = layout.root.resolve()
    absolute = BoardLayout(root)
    number = station.number
    unit_json = absolute.unit_path(unit.id, station_location(number))
    done_sentinel = absolute.completion_sentinel_path(unit.id, number)
    andon_sentinel = absolute.escalation_sentinel_path(unit.id, number)
    andon_report = absolute.escalation_report_path(unit.id, number)

    common = (
        "ASSEMBLY LINE CONTEXT:\n"
        f"You are Station {number} ({station.name}) on the Assembly Line.\n"
        f'Processing unit {unit.id}: "{unit.title}"\n'
        f"Unit JSON: {unit_json}\n"
        f"Assembly Line dir: {root}\n"
        f"Project root: {project_root}\n"
        "\n"
        "RULES:\n"
        "1. Follow the work instruction in your system prompt exactly.\n"
        f"2. Read {project_root / 'CLAUDE.md'} if it exists.\n"
        "3. If you hit an Andon trigger: stop. Write an Andon report to "
        f"{andon_report} with fields: unit_id, station, trigger, question, context, "
        f"timestamp, resolved(false). Write the same data to {andon_sentinel}. "
        "Then stop working.\n"
        "4. When all work for your station is complete: update the unit JSON "
        f"station_{number} fields, then write {done_sentinel} with: "
        f'{{"status":"done","unit":"{unit.id}","station":{number},"timestamp":"<ISO>"}}\n'
        "5. Do not advance the unit to the next station. The controller handles that.\n"
    )
    context = _station_context(absolute, number, unit)
    return f"{common}\n{context}" if context else common


def branch_name(unit: Unit) -> str:
    slug = _BRANCH_SLUG.sub("-", unit.title.lower())[:40]
    return f"feature/{unit.id}-{slug}"


def _station_context(layout: BoardLayout, number: int, unit: Unit) -> str:  # noqa: PLR0911
    spec_file = unit.station_result(1).get("spec_file") or str(layout.spec_path(unit.id))
    plan_file = unit.station_result(2).get("plan_file") or str(layout.plan_path(unit.id))
    branch = unit.station_result(3).get("branch") or f"feature/{unit.id}"

    if number == 1:
        return (
            f'INPUT: Raw request: "{unit.title}" | Priority: {unit.priority}\n'
            f"TASK: Decompose into a structured spec and write it to {layout.spec_path(unit.id)}\n"
            "Update unit JSON station_1 fields: acceptance_criteria, edge_cases, "
            "dependencies, spec_file, completed."
        )
    if number == 2:
        return (
            f"INPUT: Spec at {spec_file}\n"
            f"TASK: Produce an implementation plan at {layout.plan_path(unit.id)}\n"
            "Update unit JSON station_2 fields: files_to_change, interfaces, plan_file, completed."
        )
    if number == 3:
        return (
            f"INPUT: Spec at {spec_file}\nPlan at {plan_file}\n"
            "TASK: Implement following the plan's implementation order.\n"
            f"Branch: {branch_name(unit)}\n"
            f'Commit format: "{unit.id}: Step N - description"\n'
            "Update unit JSON station_3 fields: branch, commits, started, completed."
        )
    if number == 4:
        return (
            f"INPUT: Spec at {spec_file}\nPlan (test strategy) at {plan_file}\n"
            f"Branch: {branch}\n"
            "TASK: Write tests for every acceptance criterion and edge case. Run them.\n"
            f"Write the report to {layout.test_report_path(unit.id)} with verdict PASS or FAIL."
        )
    if number == 5:
        return (
            f"INPUT: Spec at {spec_file}\nPlan at {plan_file}\n"
            f"Test report at {layout.test_report_path(unit.id)}\nBranch: {branch}\n"
            f"TASK: Review the diff of {branch} against main.\n"
            f"Write the review to {layout.review_path(unit.id)}\n"
            "Verdict: APPROVED, CHANGES_REQUESTED (back to Station 3), "
            "or NEEDS_REDESIGN (back to Station 2)."
        )
    if number == 6:
        return (
            f"INPUT: Branch {branch} (approved by Station 5)\n"
            "TASK: Rebase onto main, run full CI, merge with --no-ff.\n"
            f"Write completion metrics to {layout.completion_metrics_path(unit.id)}"
        )
    return ""


def render_prompt_file(
    *,
    task: str,
    unit_id: str,
    station: int,
    model: str,
    system_prompt_path: Path,
    project_root: Path,
    executable: str,
) -> str:
    """Prompt file with an interactive quick start followed by the task text."""

    return (
        f"# Station {station} Prompt for {unit_id}\n\n"
        "## Quick Start (Interactive)\n\n"
        f"```bash\ncd {project_root}\n"
        f"{executable} --model {model} --append-system-prompt-file {system_prompt_path}\n```\n\n"
        "Then paste the prompt below.\n\n---\n\n"
        f"{task}"
    )
