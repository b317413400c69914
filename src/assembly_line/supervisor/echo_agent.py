"""Local deterministic worker for supervisor integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

from assembly_line.board.contracts import BoardLayout, utc_now_iso, write_json


def main(argv: list[str] | None = None) -> int:  # noqa: C901, PLR0912
    """Emit stream-json lines and write sentinels as requested by flags."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default="")
    parser.add_argument("--emit-result", action="store_true")
    parser.add_argument("--session-id", default="echo-session")
    parser.add_argument("--cost", type=float, default=0.25)
    parser.add_argument("--turns", type=int, default=3)
    parser.add_argument("--garbage", action="store_true")
    parser.add_argument("--partial", action="store_true")
    parser.add_argument("--stderr", default=None)
    parser.add_argument("--write-done", action="store_true")
    parser.add_argument("--write-andon", default=None, metavar="TRIGGER")
    parser.add_argument("--question", default="Need a decision")
    parser.add_argument("--wait-for", default=None, metavar="PATH")
    parser.add_argument("--wait-timeout", type=float, default=30.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    layout = BoardLayout(Path(os.environ["ASSEMBLY_LINE_DIR"]))
    unit_id = os.environ["ASSEMBLY_LINE_UNIT_ID"]
    station = int(os.environ["ASSEMBLY_LINE_STATION"])

    _emit({"type": "system", "subtype": "init", "session_id": args.session_id})
    _emit(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": f"Working on {unit_id}\nsecond line"},
                    {"type": "tool_use", "name": "Bash", "input": {"command": "ls -la"}},
                ],
            },
        },
    )
    if args.garbage:
        sys.stdout.write("this is not json\n")
        sys.stdout.write("[1, 2, 3]\n")
        sys.stdout.flush()
    if args.stderr:
        sys.stderr.write(f"{args.stderr}\n")
        sys.stderr.flush()

    if args.wait_for:
        deadline = time.monotonic() + args.wait_timeout
        release = Path(args.wait_for)
        while not release.exists() and time.monotonic() < deadline:
            time.sleep(0.05)

    if args.write_done:
        write_json(
            layout.completion_sentinel_path(unit_id, station),
            {"status": "done", "unit": unit_id, "station": station, "timestamp": utc_now_iso()},
        )
    if args.write_andon:
        alert = {
            "unit_id": unit_id,
            "station": station,
            "trigger": args.write_andon,
            "question": args.question,
            "context": {"prompt_chars": len(args.prompt)},
            "timestamp": utc_now_iso(),
            "resolved": False,
        }
        write_json(layout.escalation_sentinel_path(unit_id, station), alert)

    if args.emit_result:
        result = json.dumps(
            {
                "type": "result",
                "subtype": "success",
                "session_id": args.session_id,
                "total_cost_usd": args.cost,
                "num_turns": args.turns,
            },
        )
        if args.partial:
            # Split the final event across two writes without a trailing newline.
            half = len(result) // 2
            sys.stdout.write(result[:half])
            sys.stdout.flush()
            time.sleep(0.05)
            sys.stdout.write(result[half:])
            sys.stdout.flush()
        else:
            _emit_raw(result)
    return args.exit_code


def _emit(payload: dict[str, object]) -> None:
    _emit_raw(json.dumps(payload))


def _emit_raw(line: str) -> None:
    sys.stdout.write(f"{line}\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
