"""In-process hook registry for Clodds.

Hooks are the extension seam for cross-cutting policy (content filtering,
audit logging, memory capture) around the agent loop. Two invocation
modes:

- trigger(): fire-and-forget. Handlers run concurrently, errors are
  isolated -- one broken handler never crashes the loop or blocks other
  handlers.
- trigger_with_result(): handlers run sequentially as a pipeline over
  the context payload. Each stage may pass the payload on (optionally
  changed) or Block it, which short-circuits the rest of the chain.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)


class HookPoint(str, Enum):
    MESSAGE_BEFORE = "message:before"
    MESSAGE_AFTER = "message:after"
    AGENT_BEFORE_START = "agent:before_start"
    AGENT_END = "agent:end"
    TOOL_BEFORE_CALL = "tool:before_call"
    TOOL_AFTER_CALL = "tool:after_call"
    COMPACTION_BEFORE = "compaction:before"
    COMPACTION_AFTER = "compaction:after"
    ERROR = "error"


@dataclass
class Continue:
    """Pipeline stage result: carry on with this payload."""

    payload: dict[str, Any]


@dataclass
class Block:
    """Pipeline stage result: stop the chain and the caller."""

    reason: str


StageResult = Union[Continue, Block, dict[str, Any], None]

# Handler type: sync or async callable taking a HookContext
HookHandler = Callable[["HookContext"], Union[StageResult, Awaitable[StageResult]]]


@dataclass
class HookContext:
    """Ephemeral per-invocation context. Never persisted."""

    hook_point: HookPoint
    session: Any = None  # Session; typed loosely to keep hooks import-free
    payload: dict[str, Any] = field(default_factory=dict)
    mutations: dict[str, Any] = field(default_factory=dict)
    blocked: bool = False
    block_reason: str | None = None

    def block(self, reason: str) -> None:
        self.blocked = True
        self.block_reason = reason


@dataclass
class _Hook:
    id: str
    point: HookPoint
    handler: HookHandler
    name: str
    priority: int
    seq: int
    enabled: bool = True


class HookRegistry:
    """Registry of hook handlers per HookPoint.

    Handlers run in priority order (higher first), ties in registration
    order. fire() schedules a fire-and-forget trigger on a background
    task; drain() waits for those (shutdown and tests).
    """

    def __init__(self) -> None:
        self._hooks: dict[HookPoint, list[_Hook]] = defaultdict(list)
        self._by_id: dict[str, _Hook] = {}
        self._seq = itertools.count(1)
        self._pending: set[asyncio.Task] = set()

    def register(
        self,
        point: HookPoint | str,
        handler: HookHandler,
        *,
        name: str | None = None,
        priority: int = 0,
    ) -> str:
        """Register a handler for a hook point. Returns the hook id."""
        point = HookPoint(point)
        seq = next(self._seq)
        hook = _Hook(
            id=f"hook_{seq}",
            point=point,
            handler=handler,
            name=name or getattr(handler, "__qualname__", repr(handler)),
            priority=priority,
            seq=seq,
        )
        self._hooks[point].append(hook)
        self._hooks[point].sort(key=lambda h: (-h.priority, h.seq))
        self._by_id[hook.id] = hook
        logger.debug("Registered hook %s for '%s': %s", hook.id, point.value, hook.name)
        return hook.id

    def unregister(self, hook_id: str) -> bool:
        hook = self._by_id.pop(hook_id, None)
        if hook is None:
            return False
        self._hooks[hook.point].remove(hook)
        return True

    def set_enabled(self, hook_id: str, enabled: bool) -> bool:
        hook = self._by_id.get(hook_id)
        if hook is None:
            return False
        hook.enabled = enabled
        return True

    def handlers(self, point: HookPoint | str) -> list[str]:
        """Names of enabled handlers for a point, in execution order."""
        return [h.name for h in self._active(HookPoint(point))]

    def _active(self, point: HookPoint) -> list[_Hook]:
        return [h for h in self._hooks.get(point, []) if h.enabled]

    # ------------------------------------------------------------------
    # Fire-and-forget
    # ------------------------------------------------------------------

    async def trigger(self, point: HookPoint | str, context: HookContext) -> None:
        """Run every handler for point concurrently. Never raises."""
        hooks = self._active(HookPoint(point))
        if not hooks:
            return
        await asyncio.gather(*(self._safe_handle(h, context) for h in hooks))

    def fire(self, point: HookPoint | str, context: HookContext) -> asyncio.Task | None:
        """Schedule trigger() without waiting for it."""
        if not self._active(HookPoint(point)):
            return None
        task = asyncio.create_task(self.trigger(point, context), name=f"hook-{HookPoint(point).value}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for all fired hooks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _safe_handle(self, hook: _Hook, context: HookContext) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await _call(hook.handler, context)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Hook %s failed for %s", hook.name, context.hook_point.value,
            )

    # ------------------------------------------------------------------
    # Result chaining
    # ------------------------------------------------------------------

    async def trigger_with_result(
        self, point: HookPoint | str, context: HookContext,
    ) -> HookContext:
        """Run handlers sequentially, threading context.payload through them.

        A stage returning a dict merges it into the payload (and records
        it in context.mutations); Continue replaces the payload; Block or
        context.block() stops the chain. Handler errors are logged and
        the chain moves on with the payload unchanged.
        """
        for hook in self._active(HookPoint(point)):
            try:
                result = await _call(hook.handler, context)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Hook %s failed for %s", hook.name, context.hook_point.value,
                )
                continue

            if isinstance(result, Block):
                context.block(result.reason)
            elif isinstance(result, Continue):
                context.payload = dict(result.payload)
                context.mutations.update(result.payload)
            elif isinstance(result, dict):
                context.payload.update(result)
                context.mutations.update(result)

            if context.blocked:
                logger.info(
                    "Hook %s blocked %s: %s",
                    hook.name, context.hook_point.value, context.block_reason,
                )
                break
        return context


async def _call(handler: HookHandler, context: HookContext) -> StageResult:
    result = handler(context)
    if inspect.isawaitable(result):
        result = await result
    return result
