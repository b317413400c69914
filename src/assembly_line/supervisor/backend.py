"""Subprocess launch of an external CLI worker from a command template."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from assembly_line.config import PROMPT_PLACEHOLDERS
from assembly_line.errors import ProcessLaunchError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LaunchRequest:
    """Everything needed to render and start one worker process."""

    command_template: str
    prompt: str
    prompt_file: Path
    system_prompt_file: Path
    model: str
    max_turns: int
    permission_mode: str
    allowed_tools: str
    unit_id: str
    station: int
    base_dir: Path
    cwd: Path


def build_run_args(request: LaunchRequest) -> list[str]:
    """Render the template with shell-quoted values and split it into argv."""

    stripped = request.command_template.strip()
    if not stripped:
        raise ProcessLaunchError("Worker command template is empty.")
    if not any(placeholder in stripped for placeholder in PROMPT_PLACEHOLDERS):
        raise ProcessLaunchError("Worker command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(request.prompt),
            prompt_file=shlex.quote(str(request.prompt_file)),
            system_prompt_file=shlex.quote(str(request.system_prompt_file)),
            model=shlex.quote(request.model),
            max_turns=shlex.quote(str(request.max_turns)),
            permission_mode=shlex.quote(request.permission_mode),
            allowed_tools=shlex.quote(request.allowed_tools),
            unit_id=shlex.quote(request.unit_id),
            station=shlex.quote(str(request.station)),
        )
    except (KeyError, IndexError) as error:
        raise ProcessLaunchError(
            f"Unsupported command template placeholder: {error}",
            command=stripped,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessLaunchError("Worker command template rendered empty command.")
    return argv


def launch_worker(request: LaunchRequest) -> subprocess.Popen[bytes]:
    """Start the worker with piped stdout/stderr and no stdin."""

    argv = build_run_args(request)
    env = os.environ.copy()
    env["ASSEMBLY_LINE_DIR"] = str(request.base_dir.resolve())
    env["ASSEMBLY_LINE_UNIT_ID"] = request.unit_id
    env["ASSEMBLY_LINE_STATION"] = str(request.station)

    try:
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=request.cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as error:
        raise ProcessLaunchError(
            f"Worker command not found: {argv[0]}",
            command=argv[0],
        ) from error
    except OSError as error:
        raise ProcessLaunchError(
            f"Worker failed to start: {error}",
            command=argv[0],
        ) from error
    logger.info(
        "Launched worker pid=%s for %s at station %s",
        process.pid,
        request.unit_id,
        request.station,
    )
    return process
