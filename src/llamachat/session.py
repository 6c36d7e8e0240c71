"""Explicit state of one open completion.

A ``ChatSession`` is created when a completion is loaded and dropped when the
operator switches to another one. It owns the message store and the topic
manager and knows how to turn the current state into request bodies and into
the persisted completion payload, and back.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from pydantic import ValidationError

from common.compression import compress_if_needed, decompress_if_needed
from common.events import EventEmitter, EventCallback, SaveHintChanged, StatusChanged
from common.ids import now_ms
from llamachat.aggregator import to_tool_calls
from llamachat.backend import CHAT_COMPLETIONS_PATH, COMPLETIONS_PATH
from llamachat.config import ClientConfig, SamplingParams
from llamachat.models import CompletionRecord, Timings
from llamachat.store import MessageStore
from llamachat.tools import normalize_tool_name
from llamachat.topics import TopicManager

logger = logging.getLogger(__name__)

API_COMPLETIONS = 0
API_CHAT = 1

NEW_CHAT_MARKER = "[Start a new Chat]"
TRANSCRIPT_SEPARATOR = "***"
CHAT_STOP = ["<|endoftext|>"]


def normalize_speaker_name(name: Any, fallback: str) -> str:
    raw = "" if name is None else str(name)
    cleaned = re.sub(r"[\r\n:]+", " ", raw).strip()
    return cleaned or fallback


class ChatSession:
    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        completion_id: str | None = None,
        on_event: EventCallback = None,
    ):
        self.config = config or ClientConfig()
        self.emitter = EventEmitter(on_event)
        self.store = MessageStore(self.emitter)
        self.topics = TopicManager(self.store, self.emitter, on_save=self.request_save)
        self.on_save: Callable[[str], None] | None = None

        self.completion_id = completion_id
        self.created_at = 0
        self.title = ""
        self.prompt = ""
        self.system_prompt = ""
        self.model = ""
        self.api_model = API_CHAT
        self.user_name = ""
        self.user_prefix = ""
        self.user_suffix = ""
        self.assistant_prefix = ""
        self.assistant_suffix = ""
        self.params = SamplingParams()
        self.stream = True
        self.enable_thinking = True
        self.enable_web_search = False
        self.enabled_mcp_tools: list[str] = []

        self.status_text = ""
        self.save_hint_text = ""

    # -- status ---------------------------------------------------------

    def set_status(self, text: str | None) -> None:
        self.status_text = "" if text is None else str(text)
        self.emitter.emit(StatusChanged(text=self.status_text))

    def set_save_hint(self, text: str | None) -> None:
        self.save_hint_text = "" if text is None else str(text)
        self.emitter.emit(SaveHintChanged(text=self.save_hint_text))

    @property
    def hint_text(self) -> str:
        if self.status_text and self.save_hint_text:
            return f"{self.status_text} · {self.save_hint_text}"
        return self.status_text or self.save_hint_text

    def timings_text(self, message_id: str) -> str:
        raw = self.store.latest_timings(message_id)
        if not raw:
            return ""
        try:
            return Timings.model_validate(raw).format()
        except ValidationError:
            logger.debug(f"Unreadable timings for {message_id}: {raw!r}")
            return ""

    def request_save(self, reason: str) -> None:
        if self.on_save is not None:
            self.on_save(reason)

    # -- speakers -------------------------------------------------------

    @property
    def is_chat(self) -> bool:
        return self.api_model == API_CHAT

    @property
    def user_speaker(self) -> str:
        return normalize_speaker_name(self.user_name, "User")

    @property
    def assistant_speaker(self) -> str:
        return normalize_speaker_name(self.title.strip() or "Default role", "Assistant")

    # -- request building -----------------------------------------------

    def build_chat_messages(self, include_no_context: bool = False) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []

        def push_text(role: str, text: str) -> None:
            if text:
                out.append({"role": role, "content": text})

        system = self.system_prompt.strip()
        role_prompt = self.prompt.strip()
        if system:
            out.append({"role": "system", "content": system})
        if role_prompt:
            out.append({"role": "system", "content": role_prompt})
        out.append({"role": "system", "content": NEW_CHAT_MARKER})

        for m in self.store.messages:
            if m.no_context and not include_no_context:
                continue
            raw = m.content or ""
            if m.role == "system":
                out.append({"role": "system", "content": raw})
            elif m.role == "user":
                push_text("user", self.user_prefix)
                if m.attachments:
                    parts: list[dict[str, str]] = []
                    if raw:
                        parts.append({"type": "text", "text": raw})
                    parts.extend({"type": "file", "text": a.url} for a in m.attachments if a.url)
                    out.append({"role": "user", "content": parts or raw})
                else:
                    out.append({"role": "user", "content": raw})
                push_text("user", self.user_suffix)
            elif m.role == "assistant":
                if m.tool_calls:
                    out.append(
                        {
                            "role": "assistant",
                            "content": raw,
                            "tool_calls": [tc.to_wire() for tc in to_tool_calls(m.tool_calls)],
                        }
                    )
                elif raw.strip():
                    push_text("assistant", self.assistant_prefix)
                    out.append({"role": "assistant", "content": raw})
                    push_text("assistant", self.assistant_suffix)
            elif m.role == "tool":
                out.append({"role": "tool", "content": raw, "tool_call_id": m.tool_call_id or ""})
        return out

    def build_prompt(self) -> str:
        lines: list[str] = []
        system = self.system_prompt.strip()
        if system:
            lines.append(f"System: {system}")
        lines.append(TRANSCRIPT_SEPARATOR)
        user, assistant = self.user_speaker, self.assistant_speaker
        for m in self.store.messages:
            if m.no_context:
                continue
            if m.role == "system":
                lines.append(f"System: {m.content}")
            elif m.role == "user":
                text = m.content or ""
                for a in m.attachments:
                    if a.url:
                        text += ("\n" if text else "") + f"[file] {a.url}"
                lines.append(f"{user}: {self.user_prefix}{text}{self.user_suffix}")
            elif m.role == "assistant":
                lines.append(
                    f"{assistant}: {self.assistant_prefix}{m.content or ''}{self.assistant_suffix}"
                )
        lines.append(f"{assistant}: {self.assistant_prefix}")
        return "\n".join(lines)

    def default_stop(self) -> list[str]:
        if self.is_chat:
            return list(CHAT_STOP)
        return [f"\n{self.user_speaker}", f"\n{TRANSCRIPT_SEPARATOR}"]

    def build_request(
        self,
        tools: list[dict[str, Any]] | None = None,
        *,
        include_no_context: bool = False,
    ) -> tuple[str, dict[str, Any]]:
        sampling = self.params.to_request()
        sampling["stop"] = self.params.stop if self.params.stop is not None else self.default_stop()
        body: dict[str, Any] = {"model": self.model}
        if self.is_chat:
            body["messages"] = self.build_chat_messages(include_no_context=include_no_context)
        else:
            body["prompt"] = self.build_prompt()
        body.update(sampling)
        body["enable_thinking"] = self.enable_thinking
        body["stream"] = self.stream
        if self.is_chat and tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
            body["parse_tool_calls"] = True
        return (CHAT_COMPLETIONS_PATH if self.is_chat else COMPLETIONS_PATH), body

    # -- payload ---------------------------------------------------------

    def build_params(self) -> dict[str, Any]:
        topics, topic_data = self.topics.to_wire()
        return {
            "model": self.model,
            "apiModel": self.api_model,
            "userName": self.user_name.strip(),
            "userPrefix": self.user_prefix,
            "userSuffix": self.user_suffix,
            "assistantPrefix": self.assistant_prefix,
            "assistantSuffix": self.assistant_suffix,
            "enableThinking": self.enable_thinking,
            "enableWebSearch": self.enable_web_search,
            "enabledMcpTools": list(self.enabled_mcp_tools),
            "stream": self.stream,
            "params": self.params.to_request(),
            "history": [m.to_wire() for m in self.store.messages],
            "systemLogs": [m.to_wire() for m in self.store.system_logs],
            "activeTopicId": self.topics.active_topic_id,
            "topics": topics,
            "topicData": topic_data,
        }

    def build_payload(self) -> CompletionRecord:
        threshold = self.config.compress_threshold
        params_json = json.dumps(self.build_params(), ensure_ascii=False)
        timings_json = json.dumps(self.store.timings_log, ensure_ascii=False)
        return CompletionRecord(
            id=self.completion_id or "",
            title=self.title,
            prompt=compress_if_needed(self.prompt, threshold) or "",
            system_prompt=compress_if_needed(self.system_prompt, threshold) or "",
            params_json=compress_if_needed(params_json, threshold) or "",
            timings_json=compress_if_needed(timings_json, threshold) or "",
            api_model=self.api_model,
            created_at=self.created_at,
            updated_at=now_ms(),
        )

    @staticmethod
    def _parse_json(text: str | None, expected: type) -> Any:
        raw = decompress_if_needed(text or "") or ""
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unreadable stored JSON ({len(raw)} chars)")
            return None
        return value if isinstance(value, expected) else None

    def apply_payload(self, record: CompletionRecord) -> None:
        self.title = record.title or ""
        self.system_prompt = decompress_if_needed(record.system_prompt) or ""
        self.prompt = decompress_if_needed(record.prompt) or ""
        self.created_at = int(record.created_at or 0)
        timings_log = self._parse_json(record.timings_json, list) or []
        self.store.timings_log = timings_log

        ext: dict[str, Any] = self._parse_json(record.params_json, dict) or {}
        if ext.get("model"):
            self.model = str(ext["model"])
        self.user_name = "" if ext.get("userName") is None else str(ext["userName"])
        self.user_prefix = "" if ext.get("userPrefix") is None else str(ext["userPrefix"])
        self.user_suffix = "" if ext.get("userSuffix") is None else str(ext["userSuffix"])
        self.assistant_prefix = "" if ext.get("assistantPrefix") is None else str(ext["assistantPrefix"])
        self.assistant_suffix = "" if ext.get("assistantSuffix") is None else str(ext["assistantSuffix"])
        self.params = self._parse_params(ext.get("params"))
        self.enable_thinking = bool(ext["enableThinking"]) if ext.get("enableThinking") is not None else True
        self.enable_web_search = bool(ext.get("enableWebSearch") or False)
        if ext.get("stream") is not None:
            self.stream = bool(ext["stream"])
        if isinstance(ext.get("enabledMcpTools"), list):
            names = (normalize_tool_name(n) for n in ext["enabledMcpTools"])
            self.enabled_mcp_tools = [n for n in names if n]

        api_model = ext.get("apiModel", record.api_model)
        if api_model is not None:
            self.api_model = API_COMPLETIONS if str(api_model) == "0" else API_CHAT

        topics = ext.get("topics") if isinstance(ext.get("topics"), list) else None
        topic_data = ext.get("topicData") if isinstance(ext.get("topicData"), dict) else None
        active = None if ext.get("activeTopicId") is None else str(ext["activeTopicId"])
        loaded = False
        if topics:
            try:
                self.topics.load(topics, topic_data, active)
                loaded = True
            except ValueError as e:
                logger.warning(f"Falling back to legacy history: {e}")
        if not loaded:
            self.topics.adopt_legacy(ext.get("history"), ext.get("systemLogs"), timings_log)
        self.set_save_hint("")
        logger.info(
            f"Applied completion {self.completion_id}: {len(self.topics.topics)} topics, "
            f"{len(self.store.messages)} messages in active topic"
        )

    @staticmethod
    def _parse_params(raw: Any) -> SamplingParams:
        if not isinstance(raw, dict):
            return SamplingParams()
        stop = raw.get("stop")
        if isinstance(stop, str):
            raw = {**raw, "stop": [s.strip() for s in stop.splitlines() if s.strip()] or None}
        try:
            return SamplingParams.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid sampling params: {e}")
            return SamplingParams()
