"""CLI entrypoint for assembly-line."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from assembly_line import __version__
from assembly_line.board.models import Priority
from assembly_line.controllers import (
    AddCommand,
    AdvanceCommand,
    AndonListCommand,
    AndonRaiseCommand,
    AndonResolveCommand,
    AssemblyLineCliController,
    InitCommand,
    LineCommand,
    LogsCommand,
    MetricsCommand,
    RejectCommand,
    SpawnAllCommand,
    SpawnCommand,
    StartCommand,
    StatusCommand,
    WorkersCommand,
)
from assembly_line.errors import AssemblyLineError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AssemblyLineCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class CliContext:
    base_dir: Path | None


@click.group()
@click.version_option(version=__version__, prog_name="assembly-line")
@click.option(
    "--base-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace directory. Defaults to `ASSEMBLY_LINE_DIR` or `.assembly-line`.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Diagnostic log level (stderr).",
)
@click.pass_context
def assembly_line(ctx: click.Context, base_dir: Path | None, log_level: str) -> None:
    """Assembly line controller: stations, WIP limits, andon alerts and CLI workers."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CliContext(base_dir=base_dir)


@assembly_line.command("init")
@click.pass_obj
def init(obj: CliContext) -> None:
    """Create the workspace directories and report station instructions."""

    _run(InitCommand(base_dir=obj.base_dir))


@assembly_line.command("add")
@click.argument("title")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in Priority], case_sensitive=False),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option("--route", default=None, help="Route name: `standard`, `fast` or `spike`.")
@click.pass_obj
def add(obj: CliContext, title: str, priority: str, route: str | None) -> None:
    """Add a unit to the backlog."""

    _run(AddCommand(base_dir=obj.base_dir, title=title, priority=priority, route=route))


@assembly_line.command("start")
@click.argument("unit_id")
@click.pass_obj
def start(obj: CliContext, unit_id: str) -> None:
    """Move a backlog unit to the first station of its route."""

    _run(StartCommand(base_dir=obj.base_dir, unit_id=unit_id))


@assembly_line.command("advance")
@click.argument("unit_id")
@click.pass_obj
def advance(obj: CliContext, unit_id: str) -> None:
    """Move a unit to the next station of its route."""

    _run(AdvanceCommand(base_dir=obj.base_dir, unit_id=unit_id))


@assembly_line.command("reject")
@click.argument("unit_id")
@click.argument("target_station", type=click.IntRange(min=1))
@click.pass_obj
def reject(obj: CliContext, unit_id: str, target_station: int) -> None:
    """Send a unit back to an earlier station."""

    _run(RejectCommand(base_dir=obj.base_dir, unit_id=unit_id, target_station=target_station))


@assembly_line.command("status")
@click.pass_obj
def status(obj: CliContext) -> None:
    """Show WIP per station, unit ages and pending signals."""

    _run(StatusCommand(base_dir=obj.base_dir))


@assembly_line.group()
def andon() -> None:
    """Andon alert commands."""


@andon.command("list")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved alerts.")
@click.pass_obj
def andon_list(obj: CliContext, include_resolved: bool) -> None:
    """List andon alerts."""

    _run(AndonListCommand(base_dir=obj.base_dir, include_resolved=include_resolved))


@andon.command("raise")
@click.argument("unit_id")
@click.argument("trigger")
@click.option("--station", type=click.IntRange(min=1), default=None)
@click.option("--question", default=None)
@click.pass_obj
def andon_raise(
    obj: CliContext,
    unit_id: str,
    trigger: str,
    station: int | None,
    question: str | None,
) -> None:
    """Pull the andon cord for a unit."""

    _run(
        AndonRaiseCommand(
            base_dir=obj.base_dir,
            unit_id=unit_id,
            trigger=trigger,
            station=station,
            question=question,
        ),
    )


@andon.command("resolve")
@click.argument("alert_ref")
@click.argument("resolution")
@click.pass_obj
def andon_resolve(obj: CliContext, alert_ref: str, resolution: str) -> None:
    """Resolve an alert by id or id prefix."""

    _run(AndonResolveCommand(base_dir=obj.base_dir, alert_ref=alert_ref, resolution=resolution))


@assembly_line.command("spawn")
@click.argument("station", type=click.IntRange(min=1))
@click.argument("unit_id", required=False)
@click.option("--interactive", "-i", is_flag=True, help="Prepare prompts without launching.")
@click.option("--model", default=None, help="Override `ASSEMBLY_LINE_MODEL`.")
@click.option("--max-turns", type=click.IntRange(min=1), default=None)
@click.option("--quiet", "-q", is_flag=True, help="Suppress live progress lines.")
@click.pass_obj
def spawn(  # noqa: PLR0913
    obj: CliContext,
    station: int,
    unit_id: str | None,
    interactive: bool,
    model: str | None,
    max_turns: int | None,
    quiet: bool,
) -> None:
    """Spawn a worker for one station, optionally for a specific unit."""

    _run(
        SpawnCommand(
            base_dir=obj.base_dir,
            station=station,
            unit_id=unit_id,
            interactive=interactive,
            model=model,
            max_turns=max_turns,
            quiet=quiet,
        ),
    )


@assembly_line.command("spawn-all")
@click.option("--interactive", "-i", is_flag=True, help="Prepare prompts without launching.")
@click.option("--model", default=None, help="Override `ASSEMBLY_LINE_MODEL`.")
@click.option("--max-turns", type=click.IntRange(min=1), default=None)
@click.pass_obj
def spawn_all(
    obj: CliContext,
    interactive: bool,
    model: str | None,
    max_turns: int | None,
) -> None:
    """Spawn workers at every station with queued units and free capacity."""

    _run(
        SpawnAllCommand(
            base_dir=obj.base_dir,
            interactive=interactive,
            model=model,
            max_turns=max_turns,
        ),
    )


@assembly_line.command("logs")
@click.argument("name_filter", required=False)
@click.option(
    "--lines",
    "-n",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
)
@click.pass_obj
def logs(obj: CliContext, name_filter: str | None, lines: int) -> None:
    """Tail the newest worker log, optionally filtered by unit or station."""

    _run(LogsCommand(base_dir=obj.base_dir, name_filter=name_filter, lines=lines))


@assembly_line.command("workers")
@click.pass_obj
def workers(obj: CliContext) -> None:
    """List worker records."""

    _run(WorkersCommand(base_dir=obj.base_dir))


@assembly_line.command("metrics")
@click.pass_obj
def metrics(obj: CliContext) -> None:
    """Show cycle times, first-pass yield and cost of completed units."""

    _run(MetricsCommand(base_dir=obj.base_dir))


def _run(command: LineCommand) -> None:
    try:
        _emit_lines(CONTROLLER.dispatch(command))
    except (AssemblyLineError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    assembly_line()
