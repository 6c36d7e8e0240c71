"""Incremental decoding of completion responses.

A backend may answer with legacy completion frames (``choices[0].text``),
chat streaming frames (``choices[0].delta``) or a single non-streamed chat
object (``choices[0].message``). Each field is read through an ordered list
of extractors; the last extractor that yields a string wins, so a frame that
carries several shapes resolves to the most specific one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from llamachat.aggregator import merge_tool_calls
from llamachat.errors import StreamError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
RAW_ERROR_LIMIT = 800

Extractor = Callable[[dict], Any]


def _first_choice(frame: dict) -> dict:
    choices = frame.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _sub(obj: dict, key: str) -> dict:
    value = obj.get(key)
    return value if isinstance(value, dict) else {}


CONTENT_EXTRACTORS: tuple[Extractor, ...] = (
    lambda f: _first_choice(f).get("text"),
    lambda f: _sub(_first_choice(f), "delta").get("content"),
    lambda f: _sub(_first_choice(f), "message").get("content"),
)

REASONING_EXTRACTORS: tuple[Extractor, ...] = (
    lambda f: _sub(_first_choice(f), "delta").get("reasoning_content"),
    lambda f: _sub(_first_choice(f), "message").get("reasoning_content"),
    lambda f: _first_choice(f).get("reasoning_content"),
    lambda f: f.get("reasoning_content"),
)

TOOL_CALL_EXTRACTORS: tuple[Extractor, ...] = (
    lambda f: f.get("tool_calls"),
    lambda f: _sub(_first_choice(f), "message").get("tool_calls"),
    lambda f: _sub(_first_choice(f), "delta").get("tool_calls"),
)


def _last_string(frame: dict, extractors: tuple[Extractor, ...]) -> str:
    out = ""
    for extract in extractors:
        value = extract(frame)
        if isinstance(value, str):
            out = value
    return out


@dataclass(frozen=True, slots=True)
class Delta:
    content: str = ""
    reasoning: str = ""


@dataclass(slots=True)
class FrameResult:
    delta: Delta
    tool_calls: list[dict]
    timings: dict | None
    useful: bool


@dataclass(slots=True)
class StreamResult:
    content: str = ""
    reasoning: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    timings: dict | None = None


def parse_sse_line(line: str) -> str | None:
    if not line or not line.startswith("data:"):
        return None
    if line.startswith("data: "):
        return line[6:].strip()
    return line[5:].strip()


def extract_delta(frame: dict) -> Delta:
    if not _first_choice(frame):
        return Delta()
    return Delta(
        content=_last_string(frame, CONTENT_EXTRACTORS),
        reasoning=_last_string(frame, REASONING_EXTRACTORS),
    )


def extract_tool_calls(frame: dict | None) -> list[dict]:
    if not frame:
        return []
    for extract in TOOL_CALL_EXTRACTORS:
        value = extract(frame)
        if isinstance(value, list) and value:
            return value
    return []


def extract_timings(frame: dict) -> dict | None:
    timings = frame.get("timings")
    if isinstance(timings, dict):
        return timings
    return None


def raise_for_error(frame: dict) -> None:
    error = frame.get("error")
    if not error:
        return
    if isinstance(error, dict) and error.get("message") is not None:
        message = str(error["message"])
    else:
        message = str(error)
    raise StreamError(message or "request failed")


def is_useful(delta: Delta, tool_calls: list[dict]) -> bool:
    return bool(delta.content or delta.reasoning or tool_calls)


def decode_frame(frame: dict) -> FrameResult:
    raise_for_error(frame)
    delta = extract_delta(frame)
    tool_calls = extract_tool_calls(frame)
    return FrameResult(
        delta=delta,
        tool_calls=tool_calls,
        timings=extract_timings(frame),
        useful=is_useful(delta, tool_calls),
    )


def decode_response(frame: dict) -> StreamResult:
    result = decode_frame(frame)
    return StreamResult(
        content=result.delta.content,
        reasoning=result.delta.reasoning,
        tool_calls=list(result.tool_calls),
        timings=result.timings,
    )


class StreamDecoder:
    """Consumes one event stream, line by line.

    ``feed`` returns the decoded frame for data lines that carried JSON and
    ``None`` otherwise. Once the ``[DONE]`` sentinel arrives ``done`` is set
    and further lines should not be fed. ``finish`` must be called when the
    transport is exhausted; it raises if the stream ended before anything
    useful arrived and no sentinel was seen.
    """

    def __init__(self) -> None:
        self.content = ""
        self.reasoning = ""
        self.tool_calls: list[dict] = []
        self.timings: dict | None = None
        self.done = False
        self.saw_useful = False
        self._raw_error_candidate = ""

    def feed(self, line: str) -> FrameResult | None:
        data = parse_sse_line(line)
        if data is None:
            return None
        if data == DONE_SENTINEL:
            self.done = True
            return None
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            self._remember_raw(data)
            return None
        if not isinstance(frame, dict):
            self._remember_raw(data)
            return None

        result = decode_frame(frame)
        if result.timings:
            self.timings = result.timings
        if result.useful:
            self.saw_useful = True
        if result.tool_calls:
            self.tool_calls = merge_tool_calls(self.tool_calls, result.tool_calls)
        if result.delta.reasoning:
            self.reasoning += result.delta.reasoning
        if result.delta.content:
            self.content += result.delta.content
        return result

    def _remember_raw(self, data: str) -> None:
        if not self.saw_useful and not self._raw_error_candidate and data:
            self._raw_error_candidate = data[:RAW_ERROR_LIMIT]
            logger.debug(f"Unparsable stream frame: {self._raw_error_candidate[:120]}")

    @property
    def has_output(self) -> bool:
        return bool(self.content.strip() or self.reasoning.strip() or self.tool_calls)

    def finish(self) -> StreamResult:
        if not self.done and not self.saw_useful:
            raise StreamError(self._raw_error_candidate or "request failed")
        return self.result()

    def result(self) -> StreamResult:
        return StreamResult(
            content=self.content,
            reasoning=self.reasoning,
            tool_calls=list(self.tool_calls),
            timings=self.timings,
        )
