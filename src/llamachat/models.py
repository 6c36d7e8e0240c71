from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from common.ids import generate_id, now_ms

Role = Literal["user", "assistant", "system", "tool"]
ToolStatus = Literal["pending", "done", "cancelled"]

ROLES = ("user", "assistant", "system", "tool")
ATTACHMENT_TYPES = ("file", "image_url", "text_file", "file_url")


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ToolFunction(WireModel):
    name: str = ""
    arguments: str = ""


class ToolCall(WireModel):
    id: str = ""
    type: str = "function"
    function: ToolFunction = Field(default_factory=ToolFunction)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "ToolCall":
        fn = raw.get("function") if isinstance(raw.get("function"), dict) else {}
        name = fn.get("name") if isinstance(fn.get("name"), str) else raw.get("name")
        args = fn.get("arguments") if isinstance(fn.get("arguments"), str) else raw.get("arguments")
        return cls(
            id=raw.get("id") if isinstance(raw.get("id"), str) else "",
            type=raw.get("type") or "function",
            function=ToolFunction(
                name=name if isinstance(name, str) else "",
                arguments=args if isinstance(args, str) else "",
            ),
        )


class Attachment(WireModel):
    type: str = "file"
    url: str
    name: str = ""
    is_image: bool = Field(default=False, alias="isImage")


class Timings(BaseModel):
    model_config = ConfigDict(extra="allow")

    cache_n: float | None = None
    prompt_n: float | None = None
    predicted_n: float | None = None

    @staticmethod
    def _num(value: float | None) -> float:
        if value is None or not math.isfinite(value):
            return 0
        return value

    @property
    def prompt_total(self) -> float:
        return self._num(self.cache_n) + self._num(self.prompt_n)

    @property
    def total(self) -> float:
        return self.prompt_total + self._num(self.predicted_n)

    def format(self) -> str:
        if self.total <= 0:
            return ""
        cache_n = int(self._num(self.cache_n))
        prompt_n = int(self._num(self.prompt_n))
        predicted_n = int(self._num(self.predicted_n))
        return (
            f"tokens: prompt {int(self.prompt_total)} (cache {cache_n} + new {prompt_n}), "
            f"generated {predicted_n}, total {int(self.total)}"
        )


class Message(WireModel):
    id: str = Field(default_factory=generate_id)
    role: Role
    content: str = ""
    ui_content: str | None = Field(default=None, alias="uiContent")
    reasoning: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_arguments: str | None = None
    tool_status: ToolStatus | None = None
    is_error: bool = False
    tool_calls: list[dict[str, Any]] | None = None
    hidden: bool = False
    no_context: bool = Field(default=False, alias="noContext")
    is_system_log: bool = Field(default=False, alias="isSystemLog")
    order: int | None = None
    ts: int = Field(default_factory=now_ms)
    timings: dict[str, Any] | None = None

    @property
    def sort_key(self) -> tuple[int, int]:
        primary = self.order if self.order is not None else self.ts
        return (primary, self.ts)

    @property
    def display_text(self) -> str:
        return self.ui_content if self.ui_content is not None else self.content

    def has_visible_payload(self) -> bool:
        return bool(
            self.content.strip()
            or (self.ui_content or "").strip()
            or self.reasoning.strip()
            or self.tool_calls
            or self.attachments
        )


class TimingsEntry(WireModel):
    message_id: str = Field(alias="messageId")
    ts: int = Field(default_factory=now_ms)
    timings: dict[str, Any]


class Topic(WireModel):
    id: str
    title: str
    created_at: int = Field(default=0, alias="createdAt")
    updated_at: int = Field(default=0, alias="updatedAt")


class CompletionRecord(WireModel):
    id: int | str
    title: str = ""
    prompt: str = ""
    system_prompt: str = Field(default="", alias="systemPrompt")
    params_json: str = Field(default="", alias="paramsJson")
    timings_json: str = Field(default="", alias="timingsJson")
    api_model: int = Field(default=1, alias="apiModel")
    created_at: int = Field(default=0, alias="createdAt")
    updated_at: int = Field(default=0, alias="updatedAt")


class LocalBackup(WireModel):
    id: str
    updated_at: int = Field(default=0, alias="updatedAt")
    reason: str = ""
    payload: CompletionRecord

    @property
    def effective_updated_at(self) -> int:
        return self.updated_at or self.payload.updated_at or 0
