from __future__ import annotations

import logging
from typing import Any, Iterable

from pydantic import ValidationError

from common.events import (
    EventEmitter,
    MessageAdded,
    MessageRemoved,
    MessagesReset,
    MessageUpdated,
    ToolStatusChanged,
)
from common.ids import now_ms
from llamachat.models import ATTACHMENT_TYPES, ROLES, Attachment, Message, TimingsEntry, ToolCall

logger = logging.getLogger(__name__)

TOOL_STATUSES = ("pending", "done", "cancelled")


def _normalize_attachments(raw: Any) -> list[Attachment]:
    out: list[Attachment] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, Attachment):
            out.append(item)
            continue
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        kind = item.get("type")
        if not isinstance(url, str) or not url.strip() or kind not in ATTACHMENT_TYPES:
            continue
        name = "" if item.get("name") is None else str(item.get("name"))
        if kind == "file":
            is_image = item.get("isImage") is True or item.get("is_image") is True
        else:
            is_image = kind == "image_url"
        out.append(Attachment(type="file", url=url, name=name, is_image=is_image))
    return out


def normalize_history(history: Iterable[Any] | None) -> list[Message]:
    """Rebuild messages from stored history, repairing what older saves lack.

    Unknown roles are dropped. Tool messages missing their name or arguments
    get them back from the assistant ``tool_calls`` that requested them.
    Messages that are already ``Message`` instances are kept as they are.
    """
    if not history:
        return []
    out: list[Message] = []
    calls_by_id: dict[str, dict[str, str]] = {}

    for raw in history:
        if isinstance(raw, Message):
            out.append(raw)
            continue
        if not isinstance(raw, dict):
            continue
        role = raw.get("role")
        if role not in ROLES:
            continue

        tool_calls = raw.get("tool_calls") if isinstance(raw.get("tool_calls"), list) else None
        if role == "assistant" and tool_calls:
            for tc in tool_calls:
                if not isinstance(tc, dict):
                    continue
                call = ToolCall.from_raw(tc)
                call_id = call.id.strip()
                if not call_id:
                    continue
                prev = calls_by_id.get(call_id, {})
                calls_by_id[call_id] = {
                    "tool_name": call.function.name.strip() or prev.get("tool_name", ""),
                    "tool_arguments": call.function.arguments,
                }

        tool_call_id = raw.get("tool_call_id") if isinstance(raw.get("tool_call_id"), str) else None
        tool_name = raw.get("tool_name") if isinstance(raw.get("tool_name"), str) else None
        tool_arguments = (
            raw.get("tool_arguments") if isinstance(raw.get("tool_arguments"), str) else None
        )
        if role == "tool" and tool_call_id and (not tool_name or not (tool_arguments or "").strip()):
            saved = calls_by_id.get(tool_call_id)
            if saved:
                if not tool_name and saved["tool_name"]:
                    tool_name = saved["tool_name"]
                if not (tool_arguments or "").strip() and saved["tool_arguments"]:
                    tool_arguments = saved["tool_arguments"]

        status = raw.get("tool_status")
        order = raw.get("order")
        ts = raw.get("ts")
        fields: dict[str, Any] = {}
        if isinstance(raw.get("id"), str) and raw["id"]:
            fields["id"] = raw["id"]
        try:
            message = Message(
                **fields,
                role=role,
                content="" if raw.get("content") is None else str(raw.get("content")),
                attachments=_normalize_attachments(raw.get("attachments")),
                reasoning=raw.get("reasoning") if isinstance(raw.get("reasoning"), str) else "",
                hidden=raw.get("hidden") is True,
                ui_content=raw.get("uiContent") if isinstance(raw.get("uiContent"), str) else None,
                no_context=raw.get("noContext") is True,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                tool_arguments=tool_arguments,
                is_error=raw.get("is_error") is True,
                tool_status=status if status in TOOL_STATUSES else None,
                tool_calls=tool_calls or None,
                ts=int(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else now_ms(),
                order=order if isinstance(order, int) and not isinstance(order, bool) else None,
                is_system_log=raw.get("isSystemLog") is True,
                timings=raw.get("timings") if isinstance(raw.get("timings"), dict) else None,
            )
        except ValidationError as e:
            logger.warning(f"Dropping unreadable history entry: {e}")
            continue
        out.append(message)
    return out


def normalize_system_logs(history: Iterable[Any] | None) -> list[Message]:
    logs = [m for m in normalize_history(history) if m.role == "system"]
    for m in logs:
        m.is_system_log = True
    return logs


class MessageStore:
    """Ordered messages, system logs and timings of the active topic.

    ``seq`` is the sequence counter of the owning completion: it only moves
    forward, including across topic switches.
    """

    def __init__(self, emitter: EventEmitter | None = None):
        self.emitter = emitter or EventEmitter()
        self.messages: list[Message] = []
        self.system_logs: list[Message] = []
        self.timings_log: list[dict[str, Any]] = []
        self.seq = 0

    def next_order(self) -> int:
        self.seq += 1
        return self.seq

    def _create(self, role: str, content: str, hidden: bool, extra: dict[str, Any]) -> Message:
        return Message(role=role, content=content or "", hidden=hidden, order=self.next_order(), **extra)

    def add_message(self, role: str, content: str = "", **extra: Any) -> Message:
        message = self._create(role, content, False, extra)
        self.messages.append(message)
        self.emitter.emit(MessageAdded(message_id=message.id, role=message.role))
        return message

    def add_hidden_message(self, role: str, content: str = "", **extra: Any) -> Message:
        message = self._create(role, content, True, extra)
        self.messages.append(message)
        return message

    def add_system_log(self, content: str, **extra: Any) -> Message:
        message = self._create("system", content, False, {"is_system_log": True, **extra})
        self.system_logs.append(message)
        self.emitter.emit(MessageAdded(message_id=message.id, role="system", system_log=True))
        logger.debug(f"System log #{message.order}: {content[:120]}")
        return message

    def get(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        for message in self.system_logs:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1

    def _updated(self, message_id: str, field: str) -> None:
        self.emitter.emit(MessageUpdated(message_id=message_id, field=field))

    def reveal(self, message_id: str) -> bool:
        message = self.get(message_id)
        if message is None or not message.hidden:
            return False
        message.hidden = False
        self._updated(message_id, "hidden")
        return True

    def update_content(self, message_id: str, content: str) -> None:
        message = self.get(message_id)
        if message is None:
            return
        message.content = content or ""
        self._updated(message_id, "content")

    def update_reasoning(self, message_id: str, reasoning: str) -> None:
        message = self.get(message_id)
        if message is None:
            return
        message.reasoning = reasoning or ""
        self._updated(message_id, "reasoning")

    def set_ui_and_content(self, message_id: str, ui_text: str | None, content: str | None) -> None:
        message = self.get(message_id)
        if message is None:
            return
        changed = message.content != (content or "") or message.ui_content != (ui_text or "")
        message.content = content or ""
        message.ui_content = "" if ui_text is None else str(ui_text)
        if changed:
            self._updated(message_id, "ui_content")

    def set_tool_calls(self, message_id: str, tool_calls: list[dict[str, Any]] | None) -> None:
        message = self.get(message_id)
        if message is None:
            return
        message.tool_calls = list(tool_calls or [])
        self._updated(message_id, "tool_calls")

    def set_tool_status(
        self,
        message_id: str,
        status: str,
        *,
        is_error: bool | None = None,
        no_context: bool | None = None,
    ) -> None:
        message = self.get(message_id)
        if message is None:
            return
        message.tool_status = status
        if is_error is not None:
            message.is_error = is_error
        if no_context is not None:
            message.no_context = no_context
        self.emitter.emit(
            ToolStatusChanged(
                message_id=message_id,
                tool_call_id=message.tool_call_id or "",
                tool_name=message.tool_name or "",
                status=status,
                is_error=message.is_error,
            )
        )

    def set_timings(self, message_id: str, timings: dict[str, Any] | None) -> None:
        if not message_id or not timings:
            return
        message = self.get(message_id)
        if message is not None:
            message.timings = timings
        for entry in reversed(self.timings_log):
            if str(entry.get("messageId")) == message_id:
                entry["ts"] = now_ms()
                entry["timings"] = timings
                break
        else:
            self.timings_log.append(TimingsEntry(message_id=message_id, timings=timings).to_wire())
        self._updated(message_id, "timings")

    def latest_timings(self, message_id: str) -> dict[str, Any] | None:
        message = self.get(message_id)
        if message is not None and message.timings:
            return message.timings
        for entry in reversed(self.timings_log):
            if str(entry.get("messageId")) == message_id and entry.get("timings"):
                return entry["timings"]
        return None

    def remove_silently(self, message_id: str) -> bool:
        idx = self.index_of(message_id)
        if idx < 0:
            return False
        del self.messages[idx]
        return True

    def drop_system_logs_after(self, cutoff: int) -> int:
        kept = [m for m in self.system_logs if m.sort_key[0] <= cutoff]
        dropped = len(self.system_logs) - len(kept)
        self.system_logs = kept
        return dropped

    def delete_message(self, message_id: str) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        if message.is_system_log:
            self.system_logs = [m for m in self.system_logs if m.id != message_id]
        else:
            self.messages = [m for m in self.messages if m.id != message_id]
            self.drop_system_logs_after(message.sort_key[0])
        self.emitter.emit(MessageRemoved(message_id=message_id))
        return True

    def cut(self, message_id: str, *, keep: bool) -> Message | None:
        """Drop everything after ``message_id`` (and the message itself unless ``keep``)."""
        idx = self.index_of(message_id)
        if idx < 0:
            return None
        message = self.messages[idx]
        self.drop_system_logs_after(message.sort_key[0])
        self.messages = self.messages[: idx + 1] if keep else self.messages[:idx]
        self.emitter.emit(MessagesReset(reason="cut"))
        return message

    def renderable(self) -> list[Message]:
        visible = [m for m in self.messages if not m.hidden]
        visible.extend(m for m in self.system_logs if not m.hidden)
        return sorted(visible, key=lambda m: m.sort_key)

    def sync_sequence(self) -> int:
        highest = 0
        for message in self.messages + self.system_logs:
            highest = max(highest, message.sort_key[0])
        self.seq = max(self.seq, highest)
        return self.seq

    def load(
        self,
        history: list[Message],
        system_logs: list[Message],
        timings_log: list[dict[str, Any]],
    ) -> None:
        self.messages = history
        self.system_logs = system_logs
        self.timings_log = timings_log
        self.sync_sequence()
