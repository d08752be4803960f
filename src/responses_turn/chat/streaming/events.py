"""Interpret Responses API stream events into output, reasoning and tool state."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .images import collect_image_candidates
from .reasoning import (
    extract_delta_text,
    extract_queries,
    extract_reasoning_text,
    format_tool_args,
    response_output_text,
    response_reasoning_text,
    safe_truncate,
)
from .runtime import OutputRuntime
from .types import ToolCallState, ToolCallStatus

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset(
    {"response.completed", "response.failed", "response.incomplete"}
)

_IGNORED_EVENTS = frozenset(
    {
        "response.queued",
        "response.created",
        "response.in_progress",
        "response.content_part.added",
        "response.content_part.done",
        "response.output_text.annotation.added",
        "response.reasoning_summary_part.added",
    }
)

_IMAGE_EVENT_MARKERS = ("image_generation", "image_edit", "image_variation")

_REASONING_DELTA_EVENTS = frozenset(
    {
        "response.reasoning.delta",
        "response.reasoning_text.delta",
        "response.reasoning_summary_text.delta",
    }
)
_REASONING_DONE_EVENTS = frozenset(
    {
        "response.reasoning.done",
        "response.reasoning_text.done",
        "response.reasoning_summary_text.done",
    }
)

# Builtin call item types -> (icon, display name, in-progress status line)
_BUILTIN_CALLS: dict[str, tuple[str, str, str]] = {
    "web_search_call": ("🌐", "web_search", "⏳ _searching web…_"),
    "x_search_call": ("🐦", "x_search", "⏳ _searching X…_"),
    "file_search_call": ("🔎", "file_search", "⏳ _searching…_"),
    "code_interpreter_call": ("💻", "code_interpreter", "⏳ _preparing…_"),
    "image_generation_call": ("🎨", "image_generation", "⏳ _preparing…_"),
    "mcp_call": ("🧩", "mcp", "⏳ _executing…_"),
}

_SEARCH_KINDS = {"web_search": "web_search_call", "x_search": "x_search_call"}

_FUNCTION_ITEM_TYPES = frozenset({"function_call", "custom_tool_call"})


@dataclass
class _Narration:
    """Reasoning lines describing one builtin call, rewritten in place."""

    kind: str
    header_index: int
    status_index: int
    query: str | None = None
    label: str | None = None


class StreamEventProcessor:
    """Apply decoded stream events to an ``OutputRuntime``.

    One processor serves one turn. ``start_round`` clears the per-round
    terminal capture while output and reasoning keep accumulating in the same
    runtime across rounds.
    """

    def __init__(self, runtime: OutputRuntime) -> None:
        self._runtime = runtime
        self._tool_calls: dict[str, ToolCallState] = {}
        self._narrations: dict[str, _Narration] = {}
        self._items: dict[str, dict[str, Any]] = {}
        self._query_queues: dict[str, list[str]] = {}
        self._known_queries: dict[str, str] = {}
        self._code_buffers: dict[str, str] = {}
        self._reasoning_delta_items: set[str] = set()
        self._final_payload: dict[str, Any] | None = None
        self._error_payload: dict[str, Any] | None = None
        self._terminal_seen = False
        self._response_start_offset = 0
        self._expect_new_segment = False
        self._refusal_open = False
        self.last_error: str | None = None

    @property
    def runtime(self) -> OutputRuntime:
        return self._runtime

    @property
    def terminal_seen(self) -> bool:
        return self._terminal_seen

    def start_round(self) -> None:
        """Prepare for the next request round of the same turn."""

        self._final_payload = None
        self._error_payload = None
        self._terminal_seen = False
        self._query_queues.clear()
        self._refusal_open = False
        self.last_error = None
        self._expect_new_segment = self._runtime.output_length() > 0

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def process_event(self, event_name: str | None, raw_payload: Any) -> None:
        """Apply one stream event. Malformed payloads are logged and skipped."""

        if self._terminal_seen:
            logger.debug("Ignoring %s received after terminal event", event_name)
            return

        payload = self._decode(raw_payload)
        if payload is None:
            return

        name = event_name if event_name and event_name != "message" else ""
        name = name or str(payload.get("type") or "")

        if self._is_image_event(name, payload):
            self._collect_images(payload, name)

        if name in TERMINAL_EVENTS:
            self._handle_terminal(name, payload)
        elif name in _IGNORED_EVENTS:
            return
        elif name == "response.output_text.delta":
            delta = extract_delta_text(payload)
            if delta:
                self._ensure_response_segment()
                self._runtime.append_output(delta)
        elif name == "response.output_text.done":
            self._handle_output_text_done(payload)
        elif name in _REASONING_DELTA_EVENTS:
            delta = extract_delta_text(payload)
            if delta:
                self._reasoning_delta_items.add(self._item_id(payload))
                self._runtime.append_reasoning_delta(delta)
        elif name in _REASONING_DONE_EVENTS or name == "response.reasoning_summary_part.done":
            self._handle_reasoning_done(payload)
        elif name == "response.output_item.added":
            self._handle_output_item(payload, done=False)
        elif name == "response.output_item.done":
            self._handle_output_item(payload, done=True)
        elif name == "response.function_call_arguments.delta":
            self._handle_arguments_delta(payload)
        elif name == "response.function_call_arguments.done":
            self._handle_arguments_done(payload)
        elif name == "response.function_call_arguments.failed":
            self._handle_arguments_failed(payload)
        elif name == "response.custom_tool_call_input.delta":
            self._handle_arguments_delta(payload)
        elif name == "response.custom_tool_call_input.done":
            self._handle_custom_input_done(payload)
        elif name in {"response.mcp_call_arguments.delta", "response.mcp_call.arguments.delta"}:
            return
        elif name in {"response.mcp_call_arguments.done", "response.mcp_call.arguments.done"}:
            self._handle_mcp_arguments_done(payload)
        elif name == "response.code_interpreter_call_code.delta":
            item_id = self._item_id(payload)
            self._code_buffers[item_id] = self._code_buffers.get(item_id, "") + (
                extract_delta_text(payload)
            )
        elif name == "response.code_interpreter_call_code.done":
            self._handle_code_done(payload)
        elif name == "response.refusal.delta":
            if extract_delta_text(payload) and not self._refusal_open:
                self._runtime.append_reasoning_line("⛔ Content Policy Refusal:")
                self._refusal_open = True
        elif name == "response.refusal.done":
            refusal = payload.get("refusal")
            if refusal:
                self._runtime.append_reasoning_line(f"  {safe_truncate(refusal)}")
            self._refusal_open = False
        elif name == "error":
            message = str(payload.get("message") or "Unknown error")
            self.last_error = message
            code = payload.get("code") or ""
            self._runtime.append_reasoning_line(" ".join(str(part) for part in ("⚠️ error", code, message) if part))
        elif name == "response.error":
            error = payload.get("error")
            message = (
                error.get("message") if isinstance(error, Mapping) else None
            ) or payload.get("message") or "Unknown streaming error"
            self.last_error = str(message)
            self._runtime.append_reasoning_line(
                f"⚠️ response.error {safe_truncate(message)}"
            )
            response = payload.get("response")
            # Fallback only; a terminal event takes precedence
            if isinstance(response, Mapping):
                self._error_payload = dict(response)
        elif not self._handle_builtin_lifecycle(name, payload):
            logger.debug("Unhandled stream event: %s", name)

    @staticmethod
    def _decode(raw_payload: Any) -> dict[str, Any] | None:
        if isinstance(raw_payload, Mapping):
            return dict(raw_payload)
        if isinstance(raw_payload, (bytes, bytearray)):
            raw_payload = raw_payload.decode("utf-8", errors="replace")
        if not isinstance(raw_payload, str):
            logger.debug("Skipping SSE payload of type %s", type(raw_payload).__name__)
            return None
        data = raw_payload.strip()
        if not data or data == "[DONE]":
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE payload: %s", data)
            return None
        if not isinstance(payload, dict):
            logger.debug("Skipping SSE payload that is not an object: %s", data)
            return None
        return payload

    @staticmethod
    def _item_id(payload: Mapping[str, Any]) -> str:
        item_id = payload.get("item_id")
        if not item_id:
            item = payload.get("item")
            if isinstance(item, Mapping):
                item_id = item.get("id")
        return str(item_id or "")

    # ------------------------------------------------------------------
    # Output text
    # ------------------------------------------------------------------

    def _ensure_response_segment(self) -> None:
        if not self._expect_new_segment:
            return
        current = self._runtime.get_output_text()
        if current.strip() and not current.endswith("\n\n"):
            self._runtime.append_output("\n" if current.endswith("\n") else "\n\n")
        self._response_start_offset = self._runtime.output_length()
        self._expect_new_segment = False

    def _handle_output_text_done(self, payload: Mapping[str, Any]) -> None:
        full_text = extract_delta_text(payload)
        if not full_text:
            return
        self._ensure_response_segment()
        self._runtime.replace_output_segment(self._response_start_offset, full_text)
        self._expect_new_segment = True

    # ------------------------------------------------------------------
    # Reasoning
    # ------------------------------------------------------------------

    def _handle_reasoning_done(self, payload: Mapping[str, Any]) -> None:
        item_id = self._item_id(payload)
        if item_id in self._reasoning_delta_items:
            # Deltas already carried this text; only close the paragraph
            self._runtime.ensure_reasoning_trailing_newline()
            return
        full_text = extract_reasoning_text(payload)
        if full_text.strip():
            self._runtime.append_reasoning_line(full_text.strip())

    # ------------------------------------------------------------------
    # Function calls
    # ------------------------------------------------------------------

    def register_tool_call(
        self, item_id: str, *, name: str | None = None, call_id: str | None = None
    ) -> ToolCallState:
        state = self._tool_calls.get(item_id)
        if state is None:
            state = ToolCallState(item_id=item_id, name=name, call_id=call_id)
            self._tool_calls[item_id] = state
        if name and not state.name:
            state.name = name
        if call_id and not state.call_id:
            state.call_id = call_id
        return state

    def advance_tool_call(self, item_id: str, status: ToolCallStatus) -> bool:
        """Move a tracked call forward; backward transitions are refused."""

        state = self._tool_calls.get(item_id)
        if state is None:
            return False
        if not state.advance(status):
            logger.debug(
                "Refusing tool call transition %s -> %s for %s",
                state.status.value,
                status.value,
                item_id,
            )
            return False
        return True

    def _handle_arguments_delta(self, payload: Mapping[str, Any]) -> None:
        item_id = self._item_id(payload)
        state = self.register_tool_call(item_id, name=payload.get("name"))
        state.argument_buffer += extract_delta_text(payload)
        self.advance_tool_call(item_id, ToolCallStatus.ARGUMENTS_STREAMING)

    def _complete_arguments(self, state: ToolCallState, raw_arguments: str) -> None:
        if state.status.rank >= ToolCallStatus.ARGUMENTS_COMPLETE.rank:
            return
        state.argument_buffer = raw_arguments
        try:
            parsed = json.loads(raw_arguments) if raw_arguments.strip() else {}
        except json.JSONDecodeError as exc:
            state.error = {
                "type": "invalid_arguments",
                "message": f"Invalid JSON arguments: {exc.msg}",
                "raw": safe_truncate(raw_arguments, 400),
            }
            self.advance_tool_call(state.item_id, ToolCallStatus.FAILED)
            self._runtime.append_reasoning_line(
                f"  ❌ _invalid arguments: {exc.msg}_"
            )
            return
        if not isinstance(parsed, dict):
            state.error = {
                "type": "invalid_arguments",
                "message": "Tool arguments must be a JSON object",
                "raw": safe_truncate(raw_arguments, 400),
            }
            self.advance_tool_call(state.item_id, ToolCallStatus.FAILED)
            self._runtime.append_reasoning_line("  ❌ _invalid arguments_")
            return

        state.arguments = parsed
        self.advance_tool_call(state.item_id, ToolCallStatus.ARGUMENTS_COMPLETE)
        formatted = format_tool_args(parsed)
        if formatted:
            self._runtime.append_reasoning_line(f"  args:{formatted}")

        normalized = (state.name or "").lower()
        if normalized in _SEARCH_KINDS:
            self._queue_queries(_SEARCH_KINDS[normalized], extract_queries(parsed))

    def _handle_arguments_done(self, payload: Mapping[str, Any]) -> None:
        item_id = self._item_id(payload)
        state = self.register_tool_call(item_id, name=payload.get("name"))
        arguments = payload.get("arguments")
        if isinstance(arguments, Mapping):
            arguments = json.dumps(arguments)
        if not isinstance(arguments, str):
            arguments = state.argument_buffer
        self._complete_arguments(state, arguments)

    def _handle_arguments_failed(self, payload: Mapping[str, Any]) -> None:
        item_id = self._item_id(payload)
        state = self.register_tool_call(item_id, name=payload.get("name"))
        error = payload.get("error")
        message = error.get("message") if isinstance(error, Mapping) else None
        state.error = {"type": "arguments_failed", "message": message or "failed"}
        self.advance_tool_call(item_id, ToolCallStatus.FAILED)
        self._runtime.append_reasoning_line("  ❌ _args failed_")

    def _handle_custom_input_done(self, payload: Mapping[str, Any]) -> None:
        item_id = self._item_id(payload)
        state = self.register_tool_call(item_id, name=payload.get("name"))
        raw_input = payload.get("input")
        if not isinstance(raw_input, str):
            raw_input = state.argument_buffer
        if state.status.rank < ToolCallStatus.ARGUMENTS_COMPLETE.rank:
            state.argument_buffer = raw_input
            state.arguments = {"input": raw_input}
            self.advance_tool_call(item_id, ToolCallStatus.ARGUMENTS_COMPLETE)
            formatted = format_tool_args(raw_input)
            if formatted:
                self._runtime.append_reasoning_line(f"  input:{formatted}")

    def _handle_mcp_arguments_done(self, payload: Mapping[str, Any]) -> None:
        arguments = payload.get("arguments")
        formatted = format_tool_args(arguments)
        if formatted:
            self._runtime.append_reasoning_line(f"  args:{formatted}")
        self._queue_queries("web_search_call", extract_queries(arguments))

    def _register_function_item(self, item: Mapping[str, Any], *, done: bool) -> None:
        item_id = str(item.get("id") or item.get("call_id") or "")
        existed = item_id in self._tool_calls
        state = self.register_tool_call(
            item_id, name=item.get("name"), call_id=item.get("call_id")
        )
        if not existed and not done:
            self._runtime.append_reasoning_line(f"**🔧 {state.name or 'tool'}**:")
        if not done:
            return
        if item.get("type") == "custom_tool_call":
            raw_input = item.get("input")
            if isinstance(raw_input, str) and state.arguments is None:
                self._handle_custom_input_done({"item_id": item_id, "input": raw_input})
            return
        arguments = item.get("arguments")
        if isinstance(arguments, Mapping):
            arguments = json.dumps(arguments)
        if isinstance(arguments, str):
            self._complete_arguments(state, arguments)

    # ------------------------------------------------------------------
    # Builtin tool narration
    # ------------------------------------------------------------------

    def _queue_queries(self, kind: str, queries: list[str]) -> None:
        if queries:
            self._query_queues.setdefault(kind, []).extend(queries)

    def _header_text(self, narration: _Narration) -> str:
        icon, display, _ = _BUILTIN_CALLS[narration.kind]
        if narration.kind == "mcp_call" and narration.label:
            display = f"mcp: {narration.label}"
        if narration.query:
            return f'**{icon} {display} "{safe_truncate(narration.query, 60)}"**:'
        return f"**{icon} {display}**:"

    def _start_narration(self, kind: str, item_id: str) -> _Narration:
        narration = self._narrations.get(item_id)
        if narration is not None:
            return narration

        query = self._known_queries.get(item_id)
        queue = self._query_queues.get(kind)
        if query is None and queue:
            query = queue.pop(0)
            self._known_queries[item_id] = query

        item = self._items.get(item_id) or {}
        label = None
        if kind == "mcp_call":
            parts = [
                str(part) for part in (item.get("server_label"), item.get("name")) if part
            ]
            label = "/".join(parts) or None

        narration = _Narration(
            kind=kind, header_index=-1, status_index=-1, query=query, label=label
        )
        narration.header_index = self._runtime.append_reasoning_line(
            self._header_text(narration)
        )
        narration.status_index = self._runtime.append_reasoning_line(
            f"  {_BUILTIN_CALLS[kind][2]}"
        )
        self._narrations[item_id] = narration
        return narration

    def _annotate_query(self, item_id: str, query: str) -> None:
        """Record a query for *item_id*, rewriting its header if it exists."""

        self._known_queries[item_id] = query
        narration = self._narrations.get(item_id)
        if narration is not None and narration.query != query:
            narration.query = query
            self._runtime.update_reasoning_line(
                narration.header_index, self._header_text(narration)
            )

    def _set_status(self, narration: _Narration, text: str) -> None:
        self._runtime.update_reasoning_line(narration.status_index, f"  {text}")

    def _handle_builtin_lifecycle(self, name: str, payload: Mapping[str, Any]) -> bool:
        parts = name.split(".")
        if len(parts) != 3 or parts[0] != "response" or parts[1] not in _BUILTIN_CALLS:
            return False
        kind, phase = parts[1], parts[2]
        item_id = self._item_id(payload)
        narration = self._start_narration(kind, item_id)

        if phase == "searching":
            query = narration.query
            suffix = f' "{safe_truncate(query, 60)}"' if query else ""
            self._set_status(narration, f"🔍 _searching{suffix}…_")
        elif phase == "interpreting":
            self._set_status(narration, "▶️ _executing…_")
        elif phase == "generating":
            self._set_status(narration, "🖌️ _generating image…_")
        elif phase == "partial_image":
            index = payload.get("partial_image_index")
            number = index + 1 if isinstance(index, int) else 1
            self._set_status(narration, f"🖼️ _image {number} generated_")
        elif phase == "completed":
            self._set_status(narration, "✔️ _completed_")
        elif phase == "failed":
            error = payload.get("error")
            message = (error.get("message") if isinstance(error, Mapping) else None) or "failed"
            self._set_status(narration, f"❌ _failed: {safe_truncate(message, 200)}_")
        return True

    def _handle_code_done(self, payload: Mapping[str, Any]) -> None:
        item_id = self._item_id(payload)
        code = payload.get("code")
        if not isinstance(code, str):
            code = self._code_buffers.get(item_id, "")
        self._code_buffers.pop(item_id, None)
        if not code:
            return
        preview = f"{code[:200]}…" if len(code) > 200 else code
        lines = preview.split("\n")
        if len(lines) > 5:
            self._runtime.append_reasoning_line(f"  code: ({len(lines)} lines)")
            for line in lines[:5]:
                self._runtime.append_reasoning_line(f"    {line}")
            self._runtime.append_reasoning_line(f"    ... ({len(lines) - 5} more lines)")
        else:
            self._runtime.append_reasoning_line(f"  code: {preview}")

    # ------------------------------------------------------------------
    # Output items, images and terminal events
    # ------------------------------------------------------------------

    def _handle_output_item(self, payload: Mapping[str, Any], *, done: bool) -> None:
        item = payload.get("item")
        if not isinstance(item, Mapping):
            return
        item_type = str(item.get("type") or "")
        item_id = str(item.get("id") or "")
        if item_id:
            self._items[item_id] = dict(item)

        if item_type in _FUNCTION_ITEM_TYPES:
            self._register_function_item(item, done=done)
            return

        if item_type in _BUILTIN_CALLS:
            action = item.get("action")
            queries = extract_queries(action) if isinstance(action, Mapping) else []
            if queries:
                self._annotate_query(item_id, queries[0])
            if item_type == "mcp_call" and item_id in self._narrations:
                narration = self._narrations[item_id]
                label = "/".join(
                    str(part) for part in (item.get("server_label"), item.get("name")) if part
                )
                if label and narration.label != label:
                    narration.label = label
                    self._runtime.update_reasoning_line(
                        narration.header_index, self._header_text(narration)
                    )

    @staticmethod
    def _is_image_event(name: str, payload: Mapping[str, Any]) -> bool:
        if any(marker in name for marker in _IMAGE_EVENT_MARKERS):
            return True
        if name == "response.output_item.done":
            item = payload.get("item")
            return isinstance(item, Mapping) and item.get("type") == "image_generation_call"
        return False

    def _collect_images(self, payload: Mapping[str, Any], source: str) -> None:
        fragments = collect_image_candidates(payload, source=source)
        if fragments:
            self._runtime.collect_images(fragments)

    def _handle_terminal(self, name: str, payload: Mapping[str, Any]) -> None:
        response = payload.get("response")
        if isinstance(response, Mapping):
            self._final_payload = dict(response)
        else:
            logger.warning("Terminal event %s carried no response object", name)
        self._terminal_seen = True
        self._runtime.ensure_reasoning_trailing_newline()

    # ------------------------------------------------------------------
    # Non-streaming responses
    # ------------------------------------------------------------------

    def ingest_response(self, response: Mapping[str, Any]) -> None:
        """Apply a complete JSON response as if it had been streamed."""

        if self._terminal_seen:
            return
        reasoning = response_reasoning_text(response)
        if reasoning.strip():
            self._runtime.append_reasoning_line(reasoning.strip())

        for item in response.get("output") or []:
            if not isinstance(item, Mapping):
                continue
            item_type = item.get("type")
            if item_type in _FUNCTION_ITEM_TYPES:
                self._register_function_item(item, done=False)
                self._register_function_item(item, done=True)
            elif item_type == "image_generation_call":
                self._collect_images({"item": item}, "response.output_item.done")

        text = response_output_text(response)
        if text:
            self._ensure_response_segment()
            self._runtime.append_output(text)
            self._expect_new_segment = True

        self._handle_terminal("response", {"response": response})

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def finalize(self) -> None:
        self._runtime.ensure_reasoning_trailing_newline()

    def get_final_response_payload(self) -> dict[str, Any] | None:
        payload = self._final_payload
        if payload is None:
            payload = self._error_payload
        if payload is None:
            return None
        return copy.deepcopy(payload)

    def get_tool_call(self, item_id: str) -> ToolCallState | None:
        return self._tool_calls.get(item_id)

    def get_tool_calls(self) -> list[ToolCallState]:
        return list(self._tool_calls.values())

    def attach_images(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Return *payload* with collected images appended as output items."""

        augmented = copy.deepcopy(dict(payload))
        output = augmented.get("output")
        if not isinstance(output, list):
            output = []
            augmented["output"] = output

        existing: set[str] = set()
        for item in output:
            if isinstance(item, Mapping) and item.get("type") == "image_generation_call":
                for key in ("result", "image_url"):
                    value = item.get(key)
                    if isinstance(value, str):
                        existing.add(value)

        for index, fragment in enumerate(self._runtime.get_images()):
            data = fragment.base64_data
            if fragment.value in existing or (data and data in existing):
                continue
            entry: dict[str, Any] = {
                "id": f"img_{index}",
                "type": "image_generation_call",
                "status": "completed",
                "mime_type": fragment.mime_type,
                "source": fragment.source,
            }
            if data is not None:
                entry["result"] = data
            else:
                entry["image_url"] = fragment.value
            output.append(entry)
            existing.add(fragment.value)
        return augmented


__all__ = ["StreamEventProcessor", "TERMINAL_EVENTS"]
