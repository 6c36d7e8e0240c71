from __future__ import annotations

from typing import Any

from common.ids import generate_id
from llamachat.models import ToolCall


def _new_slot(fragment: dict[str, Any], idx: int) -> dict[str, Any]:
    return {
        "index": idx,
        "id": "",
        "type": fragment.get("type") or "function",
        "function": {"name": "", "arguments": ""},
    }


def _slot_index(slot: dict[str, Any], position: int) -> int:
    index = slot.get("index")
    if isinstance(index, int) and not isinstance(index, bool):
        return index
    return position


def merge_tool_calls(
    target: list[dict[str, Any]] | None, fragments: list[dict[str, Any]] | None
) -> list[dict[str, Any]]:
    """Fold streamed tool-call fragments into ``target``.

    Slots are addressed by the fragment's ``index`` (its position in the
    batch when absent). Names and ids are only overwritten by non-empty
    values; argument text is appended as it arrives and never deduplicated.
    """
    if not fragments:
        return list(target or [])
    slots = {_slot_index(slot, pos): slot for pos, slot in enumerate(target or []) if slot}

    for position, fragment in enumerate(fragments):
        if not isinstance(fragment, dict):
            continue
        idx = _slot_index(fragment, position)

        slot = slots.get(idx)
        if slot is None:
            slot = _new_slot(fragment, idx)
            slots[idx] = slot

        call_id = fragment.get("id")
        if isinstance(call_id, str) and call_id:
            slot["id"] = call_id

        fn = fragment.get("function") if isinstance(fragment.get("function"), dict) else {}
        function = slot.setdefault("function", {"name": "", "arguments": ""})
        name = fn.get("name")
        if isinstance(name, str) and name:
            function["name"] = name
        arguments = fn.get("arguments")
        if isinstance(arguments, str) and arguments:
            function["arguments"] = (function.get("arguments") or "") + arguments

    return [slots[i] for i in sorted(slots)]


def ensure_call_ids(aggregate: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Give every slot without an id a generated one, in place."""
    for slot in aggregate:
        if isinstance(slot, dict) and not (isinstance(slot.get("id"), str) and slot["id"]):
            slot["id"] = generate_id()
    return aggregate


def to_tool_calls(aggregate: list[dict[str, Any]]) -> list[ToolCall]:
    return [ToolCall.from_raw(raw) for raw in aggregate if raw]
