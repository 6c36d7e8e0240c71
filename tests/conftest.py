import json
from typing import Any, Awaitable, Callable

import httpx
import pytest

from llamachat.backend import (
    BackendClient,
    CHAT_COMPLETIONS_PATH,
    COMPLETIONS_PATH,
    COMPLETION_GET_PATH,
    COMPLETION_SAVE_PATH,
    MCP_TOOLS_PATH,
    TOOL_EXECUTE_PATH,
)
from llamachat.config import ClientConfig
from llamachat.orchestrator import ToolOrchestrator
from llamachat.persistence import LocalBackupStore, PersistenceReconciler
from llamachat.session import ChatSession


def sse_body(*frames: Any, done: bool = True) -> bytes:
    lines = []
    for frame in frames:
        data = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def sse_response(*frames: Any, done: bool = True) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=sse_body(*frames, done=done),
    )


def chat_delta(content: str | None = None, reasoning: str | None = None, tool_calls=None) -> dict:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": delta}]}


def tool_fragment(index: int, *, call_id: str = "", name: str = "", arguments: str = "") -> dict:
    fragment: dict[str, Any] = {"index": index, "function": {}}
    if call_id:
        fragment["id"] = call_id
        fragment["type"] = "function"
    if name:
        fragment["function"]["name"] = name
    if arguments:
        fragment["function"]["arguments"] = arguments
    return fragment


ToolHandler = Callable[[dict], Awaitable[dict]]


class FakeBackend:
    """In-process stand-in for the llama.cpp server and its companion API."""

    def __init__(self):
        self.paths: list[str] = []
        self.completions: list[httpx.Response] = []
        self.completion_bodies: list[dict] = []
        self.tool_requests: list[dict] = []
        self.tool_results: list[dict] = []
        self.tool_handler: ToolHandler | None = None
        self.saved: list[dict] = []
        self.save_status = 200
        self.records: dict[str, dict] = {}
        self.mcp_tools: dict = {"tools": []}

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append(path)
        body = json.loads(request.content) if request.content else None

        if path in (CHAT_COMPLETIONS_PATH, COMPLETIONS_PATH):
            self.completion_bodies.append(body)
            return self.completions.pop(0)
        if path == TOOL_EXECUTE_PATH:
            self.tool_requests.append(body)
            if self.tool_handler is not None:
                return httpx.Response(200, json=await self.tool_handler(body))
            result = self.tool_results.pop(0) if self.tool_results else {"success": True, "data": {"content": "ok"}}
            return httpx.Response(200, json=result)
        if path == COMPLETION_SAVE_PATH:
            if self.save_status >= 400:
                return httpx.Response(self.save_status, json={"message": "disk full"})
            self.saved.append(body)
            return httpx.Response(200, json={"success": True})
        if path == COMPLETION_GET_PATH:
            name = request.url.params.get("name")
            record = self.records.get(name)
            if record is None:
                return httpx.Response(404, json={"message": f"completion {name} not found"})
            return httpx.Response(200, json={"success": True, "data": record})
        if path == MCP_TOOLS_PATH:
            return httpx.Response(200, json={"success": True, "data": self.mcp_tools})
        return httpx.Response(404, json={"message": "unknown route"})


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def config(tmp_path) -> ClientConfig:
    return ClientConfig(
        base_url="http://llama.test/",
        backup_dir=str(tmp_path / "backups"),
        save_debounce_s=0.0,
        max_retries=0,
        retry_base_delay=0.0,
    )


@pytest.fixture
def backend(config, fake_backend) -> BackendClient:
    return BackendClient(config, transport=httpx.MockTransport(fake_backend))


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def session(config, events) -> ChatSession:
    chat = ChatSession(config, completion_id="42", on_event=events.append)
    chat.model = "qwen"
    chat.topics.adopt_legacy([], [], [])
    return chat


@pytest.fixture
def backups(config) -> LocalBackupStore:
    return LocalBackupStore(config.backup_dir)


@pytest.fixture
def reconciler(session, backend, backups) -> PersistenceReconciler:
    return PersistenceReconciler(session, backend, backups)


@pytest.fixture
def orchestrator(session, backend, reconciler) -> ToolOrchestrator:
    return ToolOrchestrator(session, backend, reconciler)
