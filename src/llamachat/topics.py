from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from common.events import EventEmitter, MessagesReset, TopicSwitched
from common.ids import now_ms, topic_id
from llamachat.models import Message, Topic
from llamachat.store import MessageStore, normalize_history, normalize_system_logs

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_TITLE = "Default topic"
UNTITLED_TOPIC = "Untitled topic"

SaveCallback = Callable[[str], None] | None


def normalize_topic_title(value: Any) -> str:
    title = "" if value is None else str(value).strip()
    return title or UNTITLED_TOPIC


@dataclass
class TopicState:
    """Stored arrays of one topic. Entries are ``Message`` objects once the
    topic has been active, raw dicts while they still come from a payload."""

    history: list[Any] = field(default_factory=list)
    system_logs: list[Any] = field(default_factory=list)
    timings_log: list[dict[str, Any]] | None = None

    @classmethod
    def from_wire(cls, data: Any) -> "TopicState":
        if not isinstance(data, dict):
            return cls()
        history = data.get("history")
        logs = data.get("systemLogs")
        timings = data.get("timingsLog")
        return cls(
            history=list(history) if isinstance(history, list) else [],
            system_logs=list(logs) if isinstance(logs, list) else [],
            timings_log=list(timings) if isinstance(timings, list) else None,
        )

    def to_wire(self) -> dict[str, Any]:
        def dump(items: list[Any]) -> list[Any]:
            return [m.to_wire() if isinstance(m, Message) else m for m in items]

        return {
            "history": dump(self.history),
            "systemLogs": dump(self.system_logs),
            "timingsLog": list(self.timings_log or []),
        }


class TopicManager:
    def __init__(
        self,
        store: MessageStore,
        emitter: EventEmitter | None = None,
        on_save: SaveCallback = None,
    ):
        self.store = store
        self.emitter = emitter or store.emitter
        self.on_save = on_save
        self.topics: list[Topic] = []
        self.topic_data: dict[str, TopicState] = {}
        self.active_topic_id: str | None = None

    def get_topic(self, topic_id_: str) -> Topic | None:
        for topic in self.topics:
            if topic.id == topic_id_:
                return topic
        return None

    def persist_active_topic(self) -> None:
        active = self.active_topic_id
        if not active:
            return
        self.topic_data[active] = TopicState(
            history=self.store.messages,
            system_logs=self.store.system_logs,
            timings_log=self.store.timings_log,
        )
        topic = self.get_topic(active)
        if topic is not None:
            topic.updated_at = now_ms()

    def switch_topic(
        self,
        target_id: str,
        *,
        skip_persist: bool = False,
        skip_save: bool = False,
        fallback_timings: bool = False,
    ) -> None:
        if not target_id:
            return
        if self.get_topic(target_id) is None:
            raise ValueError(f"Unknown topic: {target_id}")
        if not skip_persist:
            self.persist_active_topic()

        previous = self.active_topic_id
        self.active_topic_id = target_id
        data = self.topic_data.get(target_id) or TopicState()

        history_all = normalize_history(data.history)
        legacy_logs = [m for m in history_all if m.role == "system"]
        messages = [m for m in history_all if m.role != "system"]
        system_logs = normalize_system_logs(data.system_logs if data.system_logs else legacy_logs)
        if data.timings_log is not None:
            timings_log = data.timings_log
        elif fallback_timings:
            timings_log = self.store.timings_log
        else:
            timings_log = []
        self.store.load(messages, system_logs, timings_log)

        logger.info(f"Switched topic {previous} -> {target_id} ({len(messages)} messages)")
        self.emitter.emit(TopicSwitched(topic_id=target_id, previous_topic_id=previous))
        self.emitter.emit(MessagesReset(reason="topic"))
        if not skip_save and self.on_save is not None:
            self.on_save("switch topic")

    def create_topic(self, title: str | None = None) -> Topic:
        now = now_ms()
        topic = Topic(id=topic_id(), title=normalize_topic_title(title), created_at=now, updated_at=now)
        self.persist_active_topic()
        self.topics.insert(0, topic)
        self.topic_data[topic.id] = TopicState(history=[], system_logs=[], timings_log=[])
        self.switch_topic(topic.id, skip_persist=True, skip_save=True)
        if self.on_save is not None:
            self.on_save("new topic")
        return topic

    def rename_topic(self, topic_id_: str, title: str) -> Topic:
        topic = self.get_topic(topic_id_)
        if topic is None:
            raise ValueError(f"Unknown topic: {topic_id_}")
        topic.title = normalize_topic_title(title)
        topic.updated_at = now_ms()
        if self.on_save is not None:
            self.on_save("rename topic")
        return topic

    def load(self, topics: list[Any], topic_data: dict[str, Any] | None, active_id: str | None) -> None:
        parsed: list[Topic] = []
        for raw in topics:
            if not isinstance(raw, dict):
                continue
            try:
                parsed.append(
                    Topic(
                        id=str(raw.get("id") or topic_id()),
                        title=normalize_topic_title(raw.get("title")),
                        created_at=int(raw.get("createdAt") or 0),
                        updated_at=int(raw.get("updatedAt") or 0),
                    )
                )
            except (TypeError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping unreadable topic entry: {e}")
        if not parsed:
            raise ValueError("no readable topics in payload")
        self.topics = parsed
        self.topic_data = {str(k): TopicState.from_wire(v) for k, v in (topic_data or {}).items()}
        pick = active_id if active_id and self.get_topic(active_id) else parsed[0].id
        self.active_topic_id = None
        self.switch_topic(pick, skip_persist=True, skip_save=True, fallback_timings=True)

    def adopt_legacy(self, history: Any, system_logs: Any, timings_log: list[dict[str, Any]]) -> None:
        """Wrap a payload saved before topics existed into one default topic."""
        history_all = normalize_history(history if isinstance(history, list) else [])
        legacy_logs = [m for m in history_all if m.role == "system"]
        now = now_ms()
        topic = Topic(id=topic_id(), title=DEFAULT_TOPIC_TITLE, created_at=now, updated_at=now)
        self.topics = [topic]
        self.active_topic_id = topic.id
        messages = [m for m in history_all if m.role != "system"]
        logs = normalize_system_logs(
            system_logs if isinstance(system_logs, list) and system_logs else legacy_logs
        )
        self.store.load(messages, logs, timings_log)
        self.topic_data = {
            topic.id: TopicState(history=messages, system_logs=logs, timings_log=timings_log)
        }
        self.emitter.emit(TopicSwitched(topic_id=topic.id))
        self.emitter.emit(MessagesReset(reason="load"))

    def to_wire(self) -> tuple[list[dict[str, Any]], dict[str, dict[str, Any]]]:
        self.persist_active_topic()
        return (
            [t.to_wire() for t in self.topics],
            {tid: data.to_wire() for tid, data in self.topic_data.items()},
        )
