"""Tool-use loop shared by the orchestrator and subagent runs.

One iteration is one model submission. A terminal response ends the loop;
a response with tool requests is dispatched, its results appended, and
the transcript is submitted again, up to max_turns times. When the budget
runs out, one final submission without tools produces the answer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from clodds.agent.context import ContextWindowManager
from clodds.agent.dispatcher import ToolContext, ToolDispatcher
from clodds.agent.models import ModelResponse, ToolRequest, ToolResult, Turn, TurnRole
from clodds.agent.protocols import ModelProvider
from clodds.agent.provider import collect_stream
from clodds.agent.streaming import StreamingReply
from clodds.config import Settings
from clodds.errors import ModelUnavailable
from clodds.hooks import HookContext, HookPoint, HookRegistry

logger = logging.getLogger(__name__)

# Overrides dispatch for one run: (request, context) -> ToolResult | str
ToolExecutor = Callable[[ToolRequest, ToolContext], Awaitable["ToolResult | str"]]

EXHAUSTED_NOTE = (
    "\n\nYou have used all available tool calls for this request. "
    "Answer now with the information you already have."
)


class LoopStatus(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    TIMED_OUT = "timed_out"
    EXHAUSTED = "exhausted"


@dataclass
class LoopOutcome:
    text: str
    status: LoopStatus
    tool_results: list[ToolResult] = field(default_factory=list)
    iterations: int = 0


def pending_requests(turns: Sequence[Turn]) -> list[ToolRequest]:
    """Tool requests of the last assistant turn that have no result yet."""
    for index in range(len(turns) - 1, -1, -1):
        turn = turns[index]
        if turn.role == TurnRole.TOOL_RESULT:
            continue
        if turn.role != TurnRole.ASSISTANT or not turn.tool_calls:
            return []
        answered = {t.call_id for t in turns[index + 1:]}
        return [call for call in turn.tool_calls if call.call_id not in answered]
    return []


class ToolLoop:
    """Drives model submissions and tool dispatch for one transcript."""

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        hooks: HookRegistry | None = None,
        executor: ToolExecutor | None = None,
    ) -> None:
        self._provider = provider
        self._dispatcher = dispatcher
        self._settings = settings
        self._hooks = hooks
        self._executor = executor

    async def run(
        self,
        context: ContextWindowManager,
        *,
        system_prompt: str,
        catalog: list[dict[str, Any]] | None,
        tool_context: ToolContext,
        model: str | None = None,
        max_turns: int | None = None,
        deadline: float | None = None,
        should_stop: Callable[[], bool] | None = None,
        reply: StreamingReply | None = None,
        on_iteration: Callable[[int, int], Awaitable[None]] | None = None,
    ) -> LoopOutcome:
        """Run until a terminal response, a stop point, or the turn budget.

        deadline is a time.monotonic() value checked at iteration
        boundaries. should_stop is the cooperative pause flag.
        """
        max_turns = max_turns or self._settings.max_turns
        all_results: list[ToolResult] = []
        session = context.session

        # A resumed run may still owe results for the last assistant turn.
        outstanding = pending_requests(session.turns)
        if outstanding:
            logger.info(
                "Session %s resuming with %d outstanding tool calls",
                session.id, len(outstanding),
            )
            results, stopped = await self._run_tools(context, outstanding, tool_context, reply, should_stop)
            all_results.extend(results)
            if stopped:
                return LoopOutcome("", LoopStatus.PAUSED, all_results, 0)

        for iteration in range(1, max_turns + 1):
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Session %s hit its deadline after %d iterations", session.id, iteration - 1)
                return LoopOutcome("", LoopStatus.TIMED_OUT, all_results, iteration - 1)
            if should_stop is not None and should_stop():
                return LoopOutcome("", LoopStatus.PAUSED, all_results, iteration - 1)

            await context.compact_if_needed()
            if on_iteration is not None:
                await on_iteration(iteration, max_turns)

            response = await self._submit(context, system_prompt, catalog, model, reply)

            if not response.wants_tools:
                context.append(Turn(role=TurnRole.ASSISTANT, content=response.text))
                return LoopOutcome(response.text, LoopStatus.COMPLETED, all_results, iteration)

            context.append(Turn(
                role=TurnRole.ASSISTANT,
                content=response.text,
                tool_calls=list(response.tool_calls),
            ))
            results, stopped = await self._run_tools(
                context, response.tool_calls, tool_context, reply, should_stop,
            )
            all_results.extend(results)
            if stopped:
                return LoopOutcome("", LoopStatus.PAUSED, all_results, iteration)

        logger.warning("Tool loop for session %s reached max_turns=%d", session.id, max_turns)
        await context.compact_if_needed()
        final = await self._submit(context, system_prompt + EXHAUSTED_NOTE, None, model, reply)
        context.append(Turn(role=TurnRole.ASSISTANT, content=final.text))
        return LoopOutcome(final.text, LoopStatus.EXHAUSTED, all_results, max_turns)

    # ------------------------------------------------------------------
    # Model submission
    # ------------------------------------------------------------------

    async def _submit(
        self,
        context: ContextWindowManager,
        system_prompt: str,
        catalog: list[dict[str, Any]] | None,
        model: str | None,
        reply: StreamingReply | None,
    ) -> ModelResponse:
        """Submit with retry on ModelUnavailable, but only while nothing
        has been streamed to the user."""
        settings = self._settings
        turns = list(context.session.turns)
        attempt = 0
        while True:
            try:
                if reply is not None:
                    events = self._provider.stream(
                        turns, system_prompt, catalog or None, settings.max_tokens, model=model,
                    )
                    return await collect_stream(events, reply.append_text)
                return await self._provider.submit(
                    turns, system_prompt, catalog or None, settings.max_tokens, model=model,
                )
            except ModelUnavailable as e:
                if reply is not None and reply.has_sent:
                    logger.warning("Model failed mid-stream, not retrying: %s", e)
                    raise
                if attempt >= settings.model_max_retries:
                    logger.error("Model unavailable after %d retries: %s", attempt, e)
                    raise
                delay = min(settings.retry_base_delay * 2 ** attempt, settings.retry_max_delay)
                if e.retry_after is not None:
                    delay = min(max(delay, e.retry_after), settings.retry_max_delay)
                attempt += 1
                logger.warning(
                    "Model unavailable (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, settings.model_max_retries, delay, e,
                )
                await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    async def _run_tools(
        self,
        context: ContextWindowManager,
        requests: Sequence[ToolRequest],
        tool_context: ToolContext,
        reply: StreamingReply | None,
        should_stop: Callable[[], bool] | None,
    ) -> tuple[list[ToolResult], bool]:
        """Dispatch requests concurrently, append results in request order.

        Returns (results, stopped). When stopped, requests not yet
        dispatched stay outstanding for the next run.
        """
        if should_stop is not None and should_stop():
            return [], True

        prepared: list[tuple[ToolRequest, ToolResult | None]] = []
        for request in requests:
            prepared.append(await self._before_call(context, request))

        results = await asyncio.gather(*(
            self._finished(blocked) if blocked is not None
            else self._dispatch_with_notice(request, tool_context, reply)
            for request, blocked in prepared
        ))

        for (request, _), result in zip(prepared, results):
            if self._hooks is not None:
                self._hooks.fire(
                    HookPoint.TOOL_AFTER_CALL,
                    HookContext(
                        hook_point=HookPoint.TOOL_AFTER_CALL,
                        session=context.session,
                        payload={
                            "tool_name": request.name,
                            "parameters": request.parameters,
                            "result": result,
                        },
                    ),
                )
            result.payload = context.fit_tool_result(result.payload)
            guard = context.append(Turn.from_tool_result(result))
            if guard.should_compact:
                await context.compact_if_needed()

        stopped = should_stop is not None and should_stop()
        return list(results), stopped

    async def _before_call(
        self, context: ContextWindowManager, request: ToolRequest,
    ) -> tuple[ToolRequest, ToolResult | None]:
        """Run tool:before_call. Returns the (possibly rewritten) request and
        an error result when a hook blocked it."""
        if self._hooks is None:
            return request, None

        ctx = HookContext(
            hook_point=HookPoint.TOOL_BEFORE_CALL,
            session=context.session,
            payload={"tool_name": request.name, "parameters": dict(request.parameters)},
        )
        await self._hooks.trigger_with_result(HookPoint.TOOL_BEFORE_CALL, ctx)
        if ctx.blocked:
            return request, ToolResult(
                call_id=request.call_id,
                payload=f"Tool call blocked: {ctx.block_reason}",
                is_error=True,
                tool_name=request.name,
                duration_ms=0,
            )
        parameters = ctx.payload.get("parameters", request.parameters)
        if parameters is not request.parameters and parameters != request.parameters:
            logger.debug("Hook rewrote parameters for %s", request.name)
            request = ToolRequest(name=request.name, parameters=parameters, call_id=request.call_id)
        return request, None

    @staticmethod
    async def _finished(result: ToolResult) -> ToolResult:
        return result

    async def _dispatch_with_notice(
        self,
        request: ToolRequest,
        tool_context: ToolContext,
        reply: StreamingReply | None,
    ) -> ToolResult:
        """Dispatch, sending running/finished notices if it takes a while."""
        if reply is None:
            return await self._dispatch(request, tool_context)

        task = asyncio.create_task(self._dispatch(request, tool_context))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._settings.tool_notice_delay)
            if task in done:
                return task.result()
            await reply.tool_running(request.name)
            result = await task
            await reply.tool_finished(request.name)
            return result
        except asyncio.CancelledError:
            task.cancel()
            raise

    async def _dispatch(self, request: ToolRequest, tool_context: ToolContext) -> ToolResult:
        """Dispatch one request. The result always answers request.call_id."""
        result = await self._execute(request, tool_context)
        if result.call_id != request.call_id:
            logger.warning(
                "Result for %s carried call_id %r, expected %r",
                request.name, result.call_id, request.call_id,
            )
            result.call_id = request.call_id
        return result

    async def _execute(self, request: ToolRequest, tool_context: ToolContext) -> ToolResult:
        if self._executor is None:
            return await self._dispatcher.dispatch(request, tool_context)

        start = time.monotonic()
        try:
            outcome = await self._executor(request, tool_context)
        except Exception as e:
            logger.exception("Tool executor error for %s", request.name)
            outcome = ToolResult(
                call_id=request.call_id,
                payload=f"Tool error: {request.name}: {e}",
                is_error=True,
                tool_name=request.name,
            )
        if isinstance(outcome, str):
            outcome = ToolResult(call_id=request.call_id, payload=outcome, tool_name=request.name)
        if outcome.duration_ms is None:
            outcome.duration_ms = int((time.monotonic() - start) * 1000)
        return outcome
