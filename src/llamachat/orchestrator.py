"""Round trips between the model and the tool executor.

One call to ``ToolOrchestrator.generate`` is one generation cycle: request,
decode the answer into an assistant message, run any requested tools
through the execution queue and ask again, up to ``max_tool_rounds``.
A failed tool round is explained once by a follow-up request without tools
and the cycle ends there.
"""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from common.events import ErrorEvent
from common.ids import generate_id
from llamachat.aggregator import ensure_call_ids
from llamachat.backend import BackendClient, CompletionResponse
from llamachat.decoder import StreamDecoder, StreamResult, decode_response
from llamachat.errors import (
    BackendError,
    CancellationError,
    LlamaChatError,
    StreamError,
    ToolExecutionError,
)
from llamachat.execution import CancelToken, ExecutionQueue
from llamachat.models import Attachment, Message, ToolCall
from llamachat.persistence import PersistenceReconciler
from llamachat.session import ChatSession
from llamachat.tools import ToolRegistry, prepared_query
from llamachat.truncation import normalize_tool_output

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    EXECUTING = "executing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    tool_arguments: str
    content: str
    is_error: bool = False
    error: str = ""


@dataclass(slots=True)
class ToolRoundResult:
    results: list[ToolResult] = field(default_factory=list)

    @property
    def has_error(self) -> bool:
        return any(r.is_error for r in self.results)

    @property
    def errors(self) -> list[str]:
        return [r.error for r in self.results if r.is_error and r.error]


class ToolOrchestrator:
    def __init__(
        self,
        session: ChatSession,
        backend: BackendClient,
        reconciler: PersistenceReconciler,
        tools: ToolRegistry | None = None,
        queue: ExecutionQueue | None = None,
    ):
        self.session = session
        self.backend = backend
        self.reconciler = reconciler
        self.tools = tools or ToolRegistry()
        self.queue = queue or ExecutionQueue()
        self.state = OrchestratorState.IDLE
        self._request_token: CancelToken | None = None
        self._tool_token: CancelToken | None = None
        self._current_id: str | None = None

    @property
    def store(self):
        return self.session.store

    @property
    def busy(self) -> bool:
        return self._request_token is not None

    def _set_state(self, state: OrchestratorState) -> None:
        if state != self.state:
            logger.debug(f"Orchestrator {self.state.value} -> {state.value}")
        self.state = state

    def stop(self) -> bool:
        """Cancel the running cycle. Returns False when nothing was running."""
        if not self.busy:
            return False
        if self._request_token is not None:
            self._request_token.cancel()
        if self._tool_token is not None:
            self._tool_token.cancel()
        return True

    # -- entry points -------------------------------------------------------

    async def send(self, user_text: str, attachments: Iterable[Attachment] = ()) -> Message | None:
        text = (user_text or "").strip()
        files = list(attachments)
        if not text and not files:
            self.session.set_status("please enter a message")
            return None
        if self.busy:
            raise LlamaChatError("a generation is already running")
        self.store.add_message("user", text, attachments=files)
        await self.reconciler.flush("send")
        return await self.generate()

    async def regenerate(self, message_id: str) -> Message | None:
        """Regenerate from ``message_id``, dropping everything after it.

        An assistant turn that called tools is removed and answered afresh;
        a plain assistant turn is cleared and refilled in place; a user turn
        keeps its text and gets a new answer.
        """
        if self.busy:
            return None
        idx = self.store.index_of(message_id)
        if idx < 0:
            return None
        message = self.store.messages[idx]

        if message.role == "assistant" and message.tool_calls:
            self.store.cut(message_id, keep=False)
            result = await self.generate()
        elif message.role == "assistant":
            self.store.cut(message_id, keep=True)
            self.store.update_content(message_id, "")
            result = await self.generate(message_id)
        elif message.role == "user":
            self.store.cut(message_id, keep=True)
            result = await self.generate()
        else:
            return None
        self.reconciler.save("regenerate")
        return result

    async def generate(self, assistant_id: str | None = None) -> Message | None:
        """Run one generation cycle and return the last assistant message.

        Returns ``None`` when the cycle failed; the failure is reported
        through status text and a system log. Cancellation is re-raised.
        """
        if self.busy:
            raise LlamaChatError("a generation is already running")
        self._request_token = CancelToken("request")
        self._tool_token = CancelToken("tools")
        self._current_id = assistant_id
        last_id = assistant_id
        self.session.set_status("generating…")
        self.session.set_save_hint("")

        try:
            last_id = await self._run_rounds()
        except CancellationError:
            self._drop_empty_placeholder()
            self._set_state(OrchestratorState.CANCELLED)
            self.session.set_status("stopped")
            logger.info("Generation stopped")
            await self.reconciler.flush("stop")
            raise
        except LlamaChatError as e:
            self._drop_empty_placeholder()
            self._set_state(OrchestratorState.FAILED)
            logger.error(f"Generation failed: {e}")
            self.session.set_status(f"generation failed: {e}")
            self.store.add_system_log(f"generation failed: {e}")
            self.session.emitter.emit(ErrorEvent(message=str(e), source="generation"))
            await self.reconciler.flush("failed")
            return None
        finally:
            self._request_token = None
            self._tool_token = None
            self._current_id = None

        self._set_state(OrchestratorState.DONE)
        self.session.set_status("done")
        self.reconciler.save("done")
        return self.store.get(last_id) if last_id else None

    # -- the loop -----------------------------------------------------------

    async def _run_rounds(self) -> str | None:
        request_token = self._request_token
        assert request_token is not None
        session = self.session
        max_rounds = session.config.max_tool_rounds

        allow_tools = True
        include_no_context = False
        stop_after_request = False
        placeholder_extra: dict[str, Any] = {}
        rounds = 0
        last_id = self._current_id

        await self._ensure_mcp_tools()

        while True:
            self._set_state(OrchestratorState.REQUESTING)
            tools = self._tools_for_request() if session.is_chat and allow_tools else []
            path, body = session.build_request(tools, include_no_context=include_no_context)
            result = await request_token.run(self._request(path, body, placeholder_extra))
            placeholder_extra = {}
            assistant_id = self._current_id
            last_id = assistant_id

            if stop_after_request:
                break
            if not (session.is_chat and result.tool_calls):
                break
            if rounds >= max_rounds:
                logger.info(f"Tool round limit ({max_rounds}) reached; keeping the answer as is")
                break

            self._set_state(OrchestratorState.TOOLS_PENDING)
            session.set_status("calling tools…")
            ensure_call_ids(result.tool_calls)
            self.store.set_tool_calls(assistant_id, result.tool_calls)
            message = self.store.get(assistant_id)
            if message is not None and not message.content.strip():
                names = [ToolCall.from_raw(tc).function.name.strip() for tc in result.tool_calls]
                label = ", ".join(n for n in names if n)
                self.store.set_ui_and_content(
                    assistant_id, f"calling tools: {label}" if label else "calling tools", ""
                )

            round_result = await self.execute_tool_calls(
                result.tool_calls, prepared_query(self.store.messages)
            )
            self.reconciler.save("tools")
            rounds += 1
            self._current_id = None

            if round_result.has_error:
                error_text = "\n".join(round_result.errors) or "tool call failed"
                self.store.add_system_log(f"tool call failed: {error_text}", no_context=True)
                self.store.set_ui_and_content(assistant_id, "tool call failed", "")
                placeholder_extra = {"no_context": True}
                allow_tools = False
                include_no_context = True
                stop_after_request = True
                session.set_status("tool call failed, generating an explanation…")
                continue

            session.set_status("tools done, continuing…")

        return last_id

    async def _ensure_mcp_tools(self) -> None:
        if not (self.session.is_chat and self.session.enabled_mcp_tools) or self.tools.tools:
            return
        try:
            self.tools.set_mcp_tools(await self.backend.list_mcp_tools())
        except BackendError as e:
            logger.warning(f"Could not load MCP tools, continuing without them: {e}")

    def _tools_for_request(self) -> list[dict[str, Any]]:
        return self.tools.tools_for_request(
            self.session.enable_web_search,
            self.session.enabled_mcp_tools,
            prepared_query(self.store.messages),
        )

    def _ensure_placeholder(self, *, hidden: bool, extra: dict[str, Any]) -> str:
        if self._current_id is None:
            add = self.store.add_hidden_message if hidden else self.store.add_message
            self._current_id = add("assistant", "", **extra).id
        return self._current_id

    def _drop_empty_placeholder(self) -> None:
        message_id = self._current_id
        if not message_id:
            return
        message = self.store.get(message_id)
        if (
            message is not None
            and message.role == "assistant"
            and message.hidden
            and not message.has_visible_payload()
        ):
            self.store.remove_silently(message_id)
            logger.debug(f"Dropped empty placeholder {message_id}")

    async def _request(self, path: str, body: dict[str, Any], extra: dict[str, Any]) -> StreamResult:
        async with self.backend.stream_completion(path, body) as response:
            if response.is_event_stream:
                message_id = self._ensure_placeholder(hidden=True, extra=extra)
                self._set_state(OrchestratorState.STREAMING)
                return await self._consume_stream(response, message_id)
            message_id = self._ensure_placeholder(hidden=False, extra=extra)
            self._set_state(OrchestratorState.STREAMING)
            try:
                data = await response.json()
            except ValueError as e:
                raise StreamError("backend returned an invalid JSON body") from e
            if not isinstance(data, dict):
                raise StreamError("backend returned an unexpected response")
            return self._apply_response(data, message_id)

    async def _consume_stream(self, response: CompletionResponse, message_id: str) -> StreamResult:
        store = self.store
        decoder = StreamDecoder()
        async for line in response.aiter_lines():
            frame = decoder.feed(line)
            if decoder.done:
                break
            if frame is None:
                continue
            if frame.useful:
                store.reveal(message_id)
            if frame.tool_calls:
                store.set_tool_calls(message_id, decoder.tool_calls)
            if frame.delta.reasoning:
                store.update_reasoning(message_id, decoder.reasoning)
            if frame.delta.content:
                store.update_content(message_id, decoder.content)

        result = decoder.finish()
        if decoder.has_output:
            store.reveal(message_id)
        if result.timings:
            store.set_timings(message_id, result.timings)
        store.update_content(message_id, result.content)
        if result.reasoning:
            store.update_reasoning(message_id, result.reasoning)
        return result

    def _apply_response(self, data: dict[str, Any], message_id: str) -> StreamResult:
        result = decode_response(data)
        if result.tool_calls:
            self.store.set_tool_calls(message_id, result.tool_calls)
        self.store.update_content(message_id, result.content)
        if result.reasoning:
            self.store.update_reasoning(message_id, result.reasoning)
        if result.timings:
            self.store.set_timings(message_id, result.timings)
        return result

    # -- tools --------------------------------------------------------------

    async def execute_tool_calls(
        self, tool_calls: list[dict[str, Any]], prepared_query: str = ""
    ) -> ToolRoundResult:
        """Run one round of tool calls, strictly one after another.

        Each call first gets a pending ``tool`` message and the session is
        flushed before anything executes. If the tool token is cancelled,
        the call already running finishes, the rest are marked cancelled
        and ``CancellationError`` is raised.
        """
        token = self._tool_token or CancelToken("tools")
        pending: list[tuple[ToolCall, str]] = []
        for raw in tool_calls:
            call = ToolCall.from_raw(raw) if isinstance(raw, dict) else raw
            if not call.id:
                call.id = generate_id()
                if isinstance(raw, dict):
                    raw["id"] = call.id
            message = self.store.add_message(
                "tool",
                "",
                tool_call_id=call.id,
                tool_name=call.function.name,
                tool_arguments=call.function.arguments,
                tool_status="pending",
                ui_content="executing…",
            )
            pending.append((call, message.id))

        if pending:
            await self.reconciler.flush("tool request")
        self._set_state(OrchestratorState.EXECUTING)

        round_result = ToolRoundResult()
        for position, (call, message_id) in enumerate(pending):
            if token.cancelled:
                self._cancel_tool_messages(pending[position:])
                raise CancellationError("tool execution cancelled")
            work = functools.partial(
                self.backend.execute_tool, call.function.name, call.function.arguments, prepared_query
            )
            try:
                response = await self.queue.submit(work, token)
                result = self._tool_success(call, message_id, response)
            except CancellationError:
                self._cancel_tool_messages(pending[position:])
                raise
            except (BackendError, ToolExecutionError) as e:
                error = e if isinstance(e, ToolExecutionError) else ToolExecutionError(call.function.name, str(e))
                result = self._tool_failure(call, message_id, error)
            round_result.results.append(result)

        if round_result.has_error:
            for _, message_id in pending:
                message = self.store.get(message_id)
                if message is not None:
                    message.no_context = True
        return round_result

    def _tool_success(self, call: ToolCall, message_id: str, response: dict[str, Any]) -> ToolResult:
        if response.get("success") is False:
            raise ToolExecutionError(call.function.name, str(response.get("error") or "tool execution failed"))
        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        out = data.get("content")
        out_text = "" if out is None else str(out)
        ui_text = out_text if out_text.strip() else json.dumps(response, ensure_ascii=False)

        config = self.session.config
        output = normalize_tool_output(out_text, ui_text, config.context_output_limit, config.ui_output_limit)
        self.store.set_ui_and_content(message_id, output.ui_content, output.content)
        self.store.set_tool_status(message_id, "done", is_error=False)
        logger.info(f"Tool {call.function.name} returned {output.total_chars} chars")
        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.function.name,
            tool_arguments=call.function.arguments,
            content=out_text,
        )

    def _tool_failure(self, call: ToolCall, message_id: str, error: ToolExecutionError) -> ToolResult:
        error_text = str(error)
        content = json.dumps(
            {"success": False, "tool_name": call.function.name, "error": error_text}, ensure_ascii=False
        )
        config = self.session.config
        output = normalize_tool_output(content, content, config.context_output_limit, config.ui_output_limit)
        self.store.set_ui_and_content(message_id, output.ui_content, output.content)
        self.store.set_tool_status(message_id, "done", is_error=True)
        logger.warning(f"Tool {call.function.name} failed: {error_text}")
        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.function.name,
            tool_arguments=call.function.arguments,
            content=content,
            is_error=True,
            error=error_text,
        )

    def _cancel_tool_messages(self, entries: list[tuple[ToolCall, str]]) -> None:
        for _, message_id in entries:
            self.store.set_ui_and_content(message_id, "cancelled", "")
            self.store.set_tool_status(message_id, "cancelled", no_context=True)
