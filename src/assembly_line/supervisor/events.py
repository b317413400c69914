"""Incremental framing and classification of a worker's stream-json output."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

TOOL_PREVIEW_CHARS = 60
TEXT_PREVIEW_CHARS = 80


@dataclass(slots=True)
class ResultEvent:
    """Terminal outcome report emitted by the worker."""

    raw: str
    session_id: str | None
    cost_usd: float
    num_turns: int


@dataclass(slots=True)
class ProgressBlock:
    """One tool invocation or text fragment from an assistant message."""

    kind: str
    text: str


@dataclass(slots=True)
class AssistantEvent:
    raw: str
    blocks: list[ProgressBlock] = field(default_factory=list)


@dataclass(slots=True)
class OtherEvent:
    raw: str
    kind: str | None


@dataclass(slots=True)
class MalformedLine:
    raw: str
    reason: str


StreamEvent = ResultEvent | AssistantEvent | OtherEvent | MalformedLine


class StreamDecoder:
    """Splits byte chunks into complete lines and classifies each one.

    A line without its terminator stays buffered until the next chunk or
    ``close()``. Blank lines produce no event.
    """

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        return [event for event in (self._decode(line) for line in complete) if event is not None]

    def close(self) -> list[StreamEvent]:
        """Flush the unterminated tail once the stream has ended.

        The tail never completed, so it is surfaced raw as a malformed line
        and never classified.
        """

        tail, self._buffer = self._buffer, b""
        line = tail.decode("utf-8", errors="replace").rstrip("\r")
        if not line.strip():
            return []
        return [MalformedLine(raw=line, reason="unterminated")]

    def _decode(self, raw_line: bytes) -> StreamEvent | None:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
        if not line.strip():
            return None
        return classify_line(line)


def classify_line(line: str) -> StreamEvent:
    """Classify one complete line; never raises."""

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as error:
        return MalformedLine(raw=line, reason=f"invalid_json: {error.msg}")
    if not isinstance(payload, dict):
        return MalformedLine(raw=line, reason="not_an_object")

    kind = payload.get("type")
    if kind == "result":
        return ResultEvent(
            raw=line,
            session_id=_optional_str(payload.get("session_id")),
            cost_usd=_as_float(payload.get("total_cost_usd")),
            num_turns=_as_int(payload.get("num_turns")),
        )
    if kind == "assistant":
        return AssistantEvent(raw=line, blocks=_progress_blocks(payload.get("message")))
    return OtherEvent(raw=line, kind=kind if isinstance(kind, str) else None)


def _progress_blocks(message: Any) -> list[ProgressBlock]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    blocks: list[ProgressBlock] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use":
            name = str(block.get("name", "tool"))
            tool_input = block.get("input")
            command = tool_input.get("command") if isinstance(tool_input, dict) else None
            text = f"{name}: {str(command)[:TOOL_PREVIEW_CHARS]}" if command else name
            blocks.append(ProgressBlock(kind="tool", text=text))
        elif block.get("type") == "text":
            text = str(block.get("text", ""))
            first_line = text.strip().split("\n", 1)[0][:TEXT_PREVIEW_CHARS] if text.strip() else ""
            if first_line.strip():
                blocks.append(ProgressBlock(kind="text", text=first_line))
    return blocks


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        return float(value)
    return 0.0


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    return 0
