from __future__ import annotations

from dataclasses import dataclass

TOOL_OUTPUT_CONTEXT_LIMIT = 20000
TOOL_OUTPUT_UI_LIMIT = 20000


@dataclass(frozen=True, slots=True)
class ToolOutput:
    content: str
    ui_content: str
    total_chars: int
    ui_total_chars: int


def build_truncation_note(total_chars: int) -> str:
    return f"\n…(truncated, original length = {int(total_chars)})"


def truncate_with_note(text: str | None, limit: int, total_chars: int | None = None) -> str:
    s = "" if text is None else str(text)
    if not limit or limit <= 0:
        return ""
    if len(s) <= limit:
        return s
    note = build_truncation_note(total_chars if total_chars is not None else len(s))
    if len(note) >= limit:
        return note[:limit]
    return s[: limit - len(note)] + note


def normalize_tool_output(
    tool_text: str | None,
    ui_text: str | None,
    context_limit: int = TOOL_OUTPUT_CONTEXT_LIMIT,
    ui_limit: int = TOOL_OUTPUT_UI_LIMIT,
) -> ToolOutput:
    raw = "" if tool_text is None else str(tool_text)
    ui_raw = "" if ui_text is None else str(ui_text)
    return ToolOutput(
        content=truncate_with_note(raw, context_limit, len(raw)),
        ui_content=truncate_with_note(ui_raw, ui_limit, len(ui_raw)),
        total_chars=len(raw),
        ui_total_chars=len(ui_raw),
    )
