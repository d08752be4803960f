"""Drive a conversational turn across request rounds and tool calls."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Mapping, Sequence

from ..config import Settings, get_settings, resolve_data_path
from ..errors import (
    ProtocolError,
    ResponseFailedError,
    ResponsesTurnError,
    ToolExecutionError,
    ToolLoopExceededError,
)
from ..logging_settings import configure_logging, parse_logging_settings
from ..responses_client import ResponsesClient
from .messages import ImageResolver, InputItem
from .request_builder import build_headers, build_request_body
from .streaming.cancellation import CancellationToken
from .streaming.events import StreamEventProcessor
from .streaming.runtime import BufferedOutputRuntime, OutputRuntime
from .streaming.tooling import (
    PendingToolCall,
    collect_function_calls,
    collect_remote_results,
    execute_tool_call,
    format_tool_result,
)
from .streaming.types import (
    ToolCallStatus,
    ToolImplementations,
    TurnResult,
    TurnStatus,
)
from .tool_manager import ToolManager

logger = logging.getLogger(__name__)


class _TurnContext:
    """Mutable state of one turn, discarded when the turn ends."""

    __slots__ = ("runtime", "processor", "token", "rounds", "response", "appended")

    def __init__(self, runtime: OutputRuntime, token: CancellationToken) -> None:
        self.runtime = runtime
        self.processor = StreamEventProcessor(runtime)
        self.token = token
        self.rounds = 0
        self.response: dict[str, Any] | None = None
        self.appended: list[dict[str, Any]] = []

    def result(
        self, status: TurnStatus, error: ResponsesTurnError | None = None
    ) -> TurnResult:
        response_id = None
        if self.response is not None and isinstance(self.response.get("id"), str):
            response_id = self.response["id"]
        return TurnResult(
            status=status,
            text=self.runtime.get_output_text(),
            reasoning=self.runtime.get_reasoning_text(),
            images=self.runtime.get_images(),
            response_id=response_id,
            response=self.response,
            rounds=self.rounds,
            tool_calls=self.processor.get_tool_calls(),
            input_items=list(self.appended),
            error=error,
        )


class TurnOrchestrator:
    """Run the request/stream/tool loop for one turn at a time."""

    def __init__(
        self,
        settings: Settings,
        tool_manager: ToolManager,
        *,
        client: ResponsesClient | None = None,
        tool_implementations: ToolImplementations | None = None,
        tool_hop_limit: int | None = None,
    ) -> None:
        self._settings = settings
        self._tool_manager = tool_manager
        self._client = client or ResponsesClient(settings)
        self._tools: ToolImplementations = dict(tool_implementations or {})
        self._tool_hop_limit = (
            settings.tool_hop_limit if tool_hop_limit is None else tool_hop_limit
        )

    async def run_turn(
        self,
        messages: Sequence[InputItem],
        *,
        model: str | None = None,
        stream: bool = True,
        reasoning_effort: str | None = None,
        verbosity: str | None = None,
        instructions: str | None = None,
        previous_response_id: str | None = None,
        vector_store_ids: Sequence[str] = (),
        runtime: OutputRuntime | None = None,
        cancel_token: CancellationToken | None = None,
        image_resolver: ImageResolver | None = None,
    ) -> TurnResult:
        """Run rounds until the model stops calling tools.

        Network and protocol failures are raised with ``partial`` set to the
        result accumulated so far. Cancellation and the round ceiling are
        reported through ``TurnResult.status`` instead.
        """

        service = self._client.service
        # Fail on a missing credential before any network activity
        build_headers(service)

        model_name = model or self._settings.default_model
        context = _TurnContext(
            runtime or BufferedOutputRuntime(), cancel_token or CancellationToken()
        )
        working_input: list[InputItem] = list(messages)
        request_input: list[InputItem] = working_input
        chain_id = previous_response_id
        hop_count = 0

        if (
            self._settings.check_remote_availability
            and not service.is_local
            and service.name != "xai"
        ):
            await self._tool_manager.refresh_remote_availability()

        while True:
            if context.token.cancelled:
                return context.result(TurnStatus.CANCELLED)

            tools = await self._tool_manager.get_enabled_tool_definitions(
                service.name, model_name, vector_store_ids=vector_store_ids
            )
            body = build_request_body(
                request_input,
                model_name,
                stream=stream,
                reasoning_effort=reasoning_effort
                or self._settings.default_reasoning_effort,
                tools=tools,
                previous_response_id=chain_id,
                service=service.name,
                instructions=instructions or self._settings.system_prompt,
                verbosity=verbosity or self._settings.default_verbosity,
                resolver=image_resolver,
            )

            context.processor.start_round()
            context.rounds += 1
            logger.debug(
                "Round %d: model=%s service=%s tools=%d chained=%s",
                context.rounds,
                model_name,
                service.name,
                len(tools),
                bool(chain_id),
            )

            try:
                if stream:
                    await self._consume_stream(body, context)
                else:
                    response = await self._client.create_response(
                        body, cancel_token=context.token
                    )
                    if response is not None and not context.token.cancelled:
                        context.processor.ingest_response(response)
            except ResponsesTurnError as exc:
                context.processor.finalize()
                exc.partial = context.result(TurnStatus.COMPLETED, exc)
                raise

            context.processor.finalize()
            if context.token.cancelled:
                logger.info("Turn cancelled during round %d", context.rounds)
                return context.result(TurnStatus.CANCELLED)

            payload = self._finalized_payload(context)
            context.response = payload

            remote_results = collect_remote_results(payload)
            if remote_results:
                logger.debug("Accepted %d remote tool result(s)", len(remote_results))

            calls = collect_function_calls(payload)
            if not calls:
                return context.result(TurnStatus.COMPLETED)

            if hop_count >= self._tool_hop_limit:
                logger.warning(
                    "Tool execution stopped after hop limit (%d)", self._tool_hop_limit
                )
                context.runtime.append_reasoning_line(
                    f"⚠️ Tool execution stopped after {self._tool_hop_limit} rounds"
                )
                return context.result(
                    TurnStatus.TOOL_LOOP_EXCEEDED,
                    ToolLoopExceededError(self._tool_hop_limit),
                )

            if context.token.cancelled:
                return context.result(TurnStatus.CANCELLED)

            outputs = await self._execute_calls(calls, context)
            hop_count += 1

            call_items = [call.to_call_item() for call in calls]
            output_items = [
                call.to_output_item(output) for call, output in zip(calls, outputs)
            ]
            context.appended.extend(call_items)
            context.appended.extend(output_items)

            response_id = payload.get("id")
            if isinstance(response_id, str) and response_id:
                chain_id = response_id
                request_input = list(output_items)
            else:
                working_input.extend(call_items)
                working_input.extend(output_items)
                request_input = working_input

    async def _consume_stream(
        self, body: dict[str, Any], context: _TurnContext
    ) -> None:
        events = self._client.stream_response(body, cancel_token=context.token)
        async with contextlib.aclosing(events):
            async for event in events:
                if context.token.cancelled:
                    break
                context.processor.process_event(event.event, event.data)

    def _finalized_payload(self, context: _TurnContext) -> dict[str, Any]:
        processor = context.processor
        payload = processor.get_final_response_payload()
        if payload is None:
            detail = "Stream ended without a terminal response event"
            if processor.last_error:
                detail = f"{detail}: {processor.last_error}"
            raise ProtocolError(detail, partial=context.result(TurnStatus.COMPLETED))

        output = payload.get("output", [])
        if output is not None and not isinstance(output, list):
            raise ProtocolError(
                "Terminal response has a malformed output list",
                partial=context.result(TurnStatus.COMPLETED),
            )

        if payload.get("status") == "failed":
            error = payload.get("error")
            detail: Any = error if error else "Response failed"
            context.response = payload
            raise ResponseFailedError(
                502, detail, partial=context.result(TurnStatus.COMPLETED)
            )

        return processor.attach_images(payload)

    async def _execute_calls(
        self, calls: Sequence[PendingToolCall], context: _TurnContext
    ) -> list[str]:
        async def _run(call: PendingToolCall) -> str:
            processor = context.processor
            state = processor.register_tool_call(
                call.item_id, name=call.name, call_id=call.call_id
            )
            if call.error is None and state.status.rank < ToolCallStatus.ARGUMENTS_COMPLETE.rank:
                state.arguments = call.arguments
                processor.advance_tool_call(call.item_id, ToolCallStatus.ARGUMENTS_COMPLETE)
            processor.advance_tool_call(call.item_id, ToolCallStatus.EXECUTING)
            try:
                output = await execute_tool_call(call, self._tools)
            except ToolExecutionError as exc:
                logger.warning("Tool '%s' failed: %s", call.name, exc.detail)
                if state.error is None:
                    state.error = exc.to_output()
                processor.advance_tool_call(call.item_id, ToolCallStatus.FAILED)
                context.runtime.append_reasoning_line(
                    f"  ❌ _{call.name} failed: {exc.detail}_"
                )
                return format_tool_result(exc.to_output())
            processor.advance_tool_call(call.item_id, ToolCallStatus.COMPLETED)
            return output

        return list(await asyncio.gather(*(_run(call) for call in calls)))


def create_orchestrator(
    settings: Settings | None = None,
    *,
    tool_implementations: ToolImplementations | None = None,
) -> TurnOrchestrator:
    """Build an orchestrator with logging, stores and client wired from *settings*."""

    settings = settings or get_settings()
    logging_path = resolve_data_path(settings.logging_settings_path)
    configure_logging(parse_logging_settings(logging_path))

    tool_manager = ToolManager(settings)
    return TurnOrchestrator(
        settings,
        tool_manager,
        tool_implementations=tool_implementations,
    )


def turn_result_summary(result: TurnResult) -> Mapping[str, Any]:
    """Compact description of a result for notification layers."""

    summary: dict[str, Any] = {
        "status": result.status.value,
        "rounds": result.rounds,
        "response_id": result.response_id,
        "images": len(result.images),
    }
    if result.error is not None:
        summary["error"] = str(result.error)
    return summary


__all__ = ["TurnOrchestrator", "create_orchestrator", "turn_result_summary"]
