from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class MessageAdded:
    message_id: str
    role: str
    system_log: bool = False


@dataclass(frozen=True, slots=True)
class MessageUpdated:
    message_id: str
    field: str


@dataclass(frozen=True, slots=True)
class MessageRemoved:
    message_id: str


@dataclass(frozen=True, slots=True)
class MessagesReset:
    reason: str


@dataclass(frozen=True, slots=True)
class ToolStatusChanged:
    message_id: str
    tool_call_id: str
    tool_name: str
    status: str
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class TopicSwitched:
    topic_id: str
    previous_topic_id: str | None = None


@dataclass(frozen=True, slots=True)
class StatusChanged:
    text: str


@dataclass(frozen=True, slots=True)
class SaveHintChanged:
    text: str


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    MessageAdded
    | MessageUpdated
    | MessageRemoved
    | MessagesReset
    | ToolStatusChanged
    | TopicSwitched
    | StatusChanged
    | SaveHintChanged
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
