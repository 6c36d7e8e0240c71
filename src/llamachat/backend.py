from __future__ import annotations

import asyncio
import functools
import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, ParamSpec, TypeVar

import httpx

from llamachat.config import ClientConfig
from llamachat.errors import BackendError
from llamachat.models import CompletionRecord

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
COMPLETIONS_PATH = "/v1/completions"
TOOL_EXECUTE_PATH = "/api/tools/execute"
COMPLETION_SAVE_PATH = "/api/chat/completion/save"
COMPLETION_GET_PATH = "/api/chat/completion/get"
COMPLETION_LIST_PATH = "/api/chat/completion/list"
COMPLETION_CREATE_PATH = "/api/chat/completion/create"
COMPLETION_DELETE_PATH = "/api/chat/completion/delete"
MODELS_PATH = "/v1/models"
MCP_TOOLS_PATH = "/api/mcp/tools"

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def error_message(response: httpx.Response) -> str:
    text = response.text
    try:
        data = response.json() if text else None
    except ValueError:
        data = None
    if isinstance(data, dict):
        if data.get("message"):
            return str(data["message"])
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return text or f"HTTP {response.status_code}"


def with_retry(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Retry idempotent requests on transport errors and retryable statuses."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        client: BackendClient = args[0]  # type: ignore[assignment]
        max_retries = client.config.max_retries
        base_delay = client.config.retry_base_delay

        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except BackendError as e:
                retryable = e.status_code is None or e.status_code in RETRYABLE_STATUS_CODES
                if not retryable or attempt >= max_retries:
                    raise
                delay = base_delay * (2**attempt)
                delay += random.uniform(0, 0.1 * delay)
                attempt += 1
                logger.warning(f"Retry {attempt}/{max_retries} after {delay:.1f}s: {e}")
                await asyncio.sleep(delay)

    return wrapper


class CompletionResponse:
    def __init__(self, response: httpx.Response):
        self._response = response

    @property
    def content_type(self) -> str:
        return (self._response.headers.get("content-type") or "").lower()

    @property
    def is_event_stream(self) -> bool:
        return "text/event-stream" in self.content_type

    async def aiter_lines(self) -> AsyncIterator[str]:
        async for line in self._response.aiter_lines():
            yield line

    async def json(self) -> Any:
        await self._response.aread()
        return self._response.json()


class BackendClient:
    def __init__(self, config: ClientConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        timeout = httpx.Timeout(
            connect=config.connect_timeout,
            read=config.read_timeout,
            write=config.connect_timeout,
            pool=config.connect_timeout,
        )
        self._client = httpx.AsyncClient(base_url=config.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.RequestError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            raise BackendError(error_message(response), response.status_code)
        if not response.text:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"{method} {path} returned invalid JSON", response.status_code) from e

    @asynccontextmanager
    async def stream_completion(self, path: str, body: dict[str, Any]) -> AsyncIterator[CompletionResponse]:
        logger.debug(f"POST {path} stream={body.get('stream')} tools={len(body.get('tools') or [])}")
        try:
            async with self._client.stream("POST", path, json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise BackendError(error_message(response), response.status_code)
                yield CompletionResponse(response)
        except httpx.RequestError as e:
            raise BackendError(f"POST {path} failed: {e}") from e

    async def execute_tool(self, tool_name: str, arguments: str, prepared_query: str = "") -> dict[str, Any]:
        data = await self._request_json(
            "POST",
            TOOL_EXECUTE_PATH,
            json={"tool_name": tool_name, "arguments": arguments, "preparedQuery": prepared_query},
        )
        return data if isinstance(data, dict) else {}

    async def save_completion(self, record: CompletionRecord) -> None:
        await self._request_json(
            "POST", COMPLETION_SAVE_PATH, params={"name": str(record.id)}, json=record.to_wire()
        )

    @with_retry
    async def get_completion(self, completion_id: str) -> CompletionRecord:
        data = await self._request_json("GET", COMPLETION_GET_PATH, params={"name": completion_id})
        raw = data.get("data") if isinstance(data, dict) else None
        raw = dict(raw) if isinstance(raw, dict) else {}
        raw.setdefault("id", completion_id)
        return CompletionRecord.model_validate(raw)

    @with_retry
    async def list_completions(self) -> list[dict[str, Any]]:
        data = await self._request_json("GET", COMPLETION_LIST_PATH)
        items = data.get("data") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    async def create_completion(self, title: str) -> dict[str, Any]:
        data = await self._request_json("POST", COMPLETION_CREATE_PATH, json={"title": title})
        created = data.get("data") if isinstance(data, dict) else None
        if not isinstance(created, dict) or created.get("id") is None:
            raise BackendError("create failed: missing completion id")
        return created

    async def delete_completion(self, completion_id: str) -> None:
        await self._request_json("DELETE", COMPLETION_DELETE_PATH, params={"name": completion_id})

    @with_retry
    async def list_models(self) -> list[dict[str, Any]]:
        data = await self._request_json("GET", MODELS_PATH)
        models = data.get("data") if isinstance(data, dict) else None
        return models if isinstance(models, list) else []

    @with_retry
    async def list_mcp_tools(self) -> dict[str, Any]:
        data = await self._request_json("GET", MCP_TOOLS_PATH)
        if isinstance(data, dict) and data.get("success") is False:
            raise BackendError(str(data.get("error") or "failed to list MCP tools"), 200)
        payload = data.get("data") if isinstance(data, dict) else None
        return payload if isinstance(payload, dict) else {}
