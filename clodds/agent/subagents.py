"""Subagent scheduler -- bounded background agent runs.

A SubagentRun executes the same tool loop as a user turn, but on its own
transcript and context window, with a capability allowlist, no access to
subagent-management capabilities, a turn budget and a wall-clock
deadline.

State machine:

    pending -> running -> {completed, failed, paused}
    paused  -> running (resume) -> {completed, failed}
    any unfinished state -> failed (cancel)

Pausing is cooperative: pause() sets a flag that the loop polls between
tool calls and at iteration boundaries. An in-flight dispatch is never
interrupted. cancel() is not cooperative for background runs: their task
is cancelled outright.

Every control call names the session that owns the run; a run is
invisible to any other session.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from clodds.agent.context import ContextWindowManager
from clodds.agent.dispatcher import ToolContext, ToolDispatcher
from clodds.agent.loop import LoopStatus, ToolExecutor, ToolLoop
from clodds.agent.models import Session, ToolRequest, ToolResult, Turn, TurnRole
from clodds.agent.protocols import Embedder, ModelProvider, Summarizer
from clodds.config import Settings
from clodds.errors import (
    ModelRequestError,
    ModelUnavailable,
    SubagentAlreadyRunning,
    SubagentNotFound,
)
from clodds.hooks import HookRegistry

logger = logging.getLogger(__name__)

DEFAULT_SUBAGENT_PROMPT = (
    "You are a focused background worker. Complete the task you are given "
    "using the available tools, then reply with a concise final result."
)

THINKING_PROMPTS: dict[str, str] = {
    "none": "",
    "basic": "\nBefore responding, briefly consider the key aspects of the question internally.",
    "chain-of-thought": (
        "\nUse explicit chain-of-thought reasoning for this task:\n"
        "1. First, understand and restate the problem\n"
        "2. Break it down into smaller steps\n"
        "3. Work through each step systematically\n"
        "4. Check your reasoning for errors\n"
        "5. Provide a clear final answer\n\n"
        "Show your reasoning process in your response."
    ),
}

Announcer = Callable[["SubagentRun"], Awaitable[None]]


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class PauseToken:
    """Cooperative pause flag polled by the tool loop."""

    def __init__(self) -> None:
        self._requested = False

    def request(self) -> None:
        self._requested = True

    def clear(self) -> None:
        self._requested = False

    def is_set(self) -> bool:
        return self._requested


@dataclass
class RunProgress:
    message: str = ""
    percent: float | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SubagentConfig:
    task: str
    parent_session_id: str
    tool_allowlist: list[str] | None = None
    max_turns: int | None = None
    timeout_seconds: float | None = None
    system_prompt: str | None = None
    model: str | None = None
    thinking_mode: str | None = None
    run_id: str | None = None


@dataclass
class SubagentRun:
    id: str
    parent_session_id: str
    task: str
    tool_allowlist: list[str] | None
    session: Session
    config: SubagentConfig
    status: RunStatus = RunStatus.PENDING
    progress: RunProgress | None = None
    result: str | None = None
    error: str | None = None
    error_category: str | None = None
    background: bool = False
    iterations: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    pause_token: PauseToken = field(default_factory=PauseToken, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_session_id": self.parent_session_id,
            "task": self.task,
            "status": self.status.value,
            "progress": (
                {"message": self.progress.message, "percent": self.progress.percent}
                if self.progress else None
            ),
            "result": self.result,
            "error": self.error,
            "error_category": self.error_category,
            "iterations": self.iterations,
            "turn_count": len(self.session.turns),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def classify_error(error: BaseException) -> str:
    """Coarse failure category recorded on a failed run."""
    message = str(error).lower()
    if isinstance(error, ModelUnavailable):
        return "rate_limit" if "429" in message or "rate" in message else "network"
    if isinstance(error, TimeoutError):
        return "timeout"
    if isinstance(error, ModelRequestError):
        if "401" in message or "403" in message:
            return "auth"
        if "token" in message or "context" in message:
            return "context_overflow"
        return "validation"
    return "unknown"


class RunRegistry:
    """Shared registry of runs. Every mutation holds the lock."""

    def __init__(self) -> None:
        self._runs: dict[str, SubagentRun] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._runs)

    def add(self, run: SubagentRun) -> None:
        with self._lock:
            self._runs[run.id] = run

    def get(self, run_id: str) -> SubagentRun | None:
        return self._runs.get(run_id)

    def list(
        self,
        parent_session_id: str | None = None,
        status: RunStatus | None = None,
    ) -> list[SubagentRun]:
        with self._lock:
            runs = list(self._runs.values())
        return [
            r for r in runs
            if (parent_session_id is None or r.parent_session_id == parent_session_id)
            and (status is None or r.status == status)
        ]

    def update(self, run_id: str, **changes: Any) -> SubagentRun:
        with self._lock:
            run = self._runs[run_id]
            for name, value in changes.items():
                setattr(run, name, value)
            return run

    def transition(self, run_id: str, expected: frozenset[RunStatus], new: RunStatus) -> bool:
        """Compare-and-set on status. False if the run is not in expected."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in expected:
                return False
            run.status = new
            return True

    def remove(self, run_id: str) -> bool:
        with self._lock:
            return self._runs.pop(run_id, None) is not None

    def prune_finished(self, keep: int) -> int:
        """Drop the oldest finished runs beyond keep. Returns the count."""
        with self._lock:
            finished = sorted(
                (r for r in self._runs.values() if r.status in FINISHED),
                key=lambda r: r.completed_at or r.created_at,
            )
            excess = finished[:max(0, len(finished) - keep)]
            for run in excess:
                del self._runs[run.id]
        return len(excess)


class SubagentScheduler:
    """Starts, pauses, resumes and reports on subagent runs."""

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        registry: RunRegistry | None = None,
        hooks: HookRegistry | None = None,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
        announcer: Announcer | None = None,
    ) -> None:
        self._provider = provider
        self._dispatcher = dispatcher
        self._settings = settings
        self._registry = registry if registry is not None else RunRegistry()
        self._hooks = hooks
        self._summarizer = summarizer
        self._embedder = embedder
        self._announcer = announcer
        self._tasks: dict[str, asyncio.Task] = {}
        self._executors: dict[str, ToolExecutor] = {}
        self._last_progress_announce: dict[str, float] = {}

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    def set_announcer(self, announcer: Announcer | None) -> None:
        self._announcer = announcer

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, config: SubagentConfig, executor: ToolExecutor | None = None) -> SubagentRun:
        """Run to a stop point (completed, failed or paused) and return the run."""
        run = self._create_run(config, executor)
        await self._execute(run)
        return run

    def start_background(
        self, config: SubagentConfig, executor: ToolExecutor | None = None,
    ) -> SubagentRun:
        """Schedule the run and return immediately. The announcer hears
        about progress and the outcome."""
        run = self._create_run(config, executor)
        run.background = True
        self._spawn(run)
        return run

    def pause(self, run_id: str, session_id: str) -> bool:
        """Request a pause. Only succeeds while the run is running."""
        run = self._owned(run_id, session_id)
        if run.status != RunStatus.RUNNING:
            logger.info("Pause ignored for subagent %s in state %s", run_id, run.status.value)
            return False
        run.pause_token.request()
        logger.info("Pause requested for subagent %s", run_id)
        return True

    def resume(self, run_id: str, session_id: str) -> bool:
        """Resume a paused run in the background.

        Finished runs, and runs that have not started yet, are left alone
        (False). A running run with a pause still pending just has the
        pause withdrawn.
        """
        run = self._owned(run_id, session_id)
        if run.status in FINISHED or run.status == RunStatus.PENDING:
            return False
        if run.status == RunStatus.RUNNING and run.pause_token.is_set():
            run.pause_token.clear()
            logger.info("Pending pause withdrawn for subagent %s", run_id)
            return True
        if not self._registry.transition(run_id, frozenset({RunStatus.PAUSED}), RunStatus.RUNNING):
            raise SubagentAlreadyRunning(run_id)
        logger.info("Resuming subagent %s", run_id)
        run.background = True
        self._spawn(run)
        return True

    def status(self, run_id: str, session_id: str) -> SubagentRun:
        return self._owned(run_id, session_id)

    def cancel(self, run_id: str, session_id: str) -> bool:
        """Stop a run for good and mark it failed with category "cancelled".

        A background run has its task cancelled; a foreground run stops at
        its next check point. Finished runs are left alone (False).
        """
        run = self._owned(run_id, session_id)
        if run.status in FINISHED:
            return False
        self._finish(run, RunStatus.FAILED, error="Cancelled", category="cancelled")
        run.pause_token.request()
        task = self._tasks.get(run_id)
        if task is not None:
            task.cancel()
        return True

    async def update_progress(
        self, run_id: str, message: str, percent: float | None = None,
    ) -> None:
        """Record progress; announce it at most once per progress interval."""
        run = self._registry.update(run_id, progress=RunProgress(message=message, percent=percent))
        if not run.background or self._announcer is None:
            return
        now = time.monotonic()
        last = self._last_progress_announce.get(run_id)
        if last is not None and now - last < self._settings.subagent_progress_interval:
            return
        self._last_progress_announce[run_id] = now
        await self._announce(run)

    async def wait_for(self, run_id: str, timeout: float | None = None) -> SubagentRun:
        """Wait for a background run to reach its next stop point."""
        task = self._tasks.get(run_id)
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise TimeoutError(f"Subagent {run_id} still running after {timeout}s")
        run = self._registry.get(run_id)
        if run is None:
            raise SubagentNotFound(run_id)
        return run

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Subagent scheduler stopped (%d runs cancelled)", len(tasks))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _owned(self, run_id: str, session_id: str) -> SubagentRun:
        run = self._registry.get(run_id)
        if run is None or not session_id or run.parent_session_id != session_id:
            raise SubagentNotFound(run_id)
        return run

    def _create_run(self, config: SubagentConfig, executor: ToolExecutor | None) -> SubagentRun:
        run_id = config.run_id or f"sub_{uuid.uuid4().hex[:12]}"
        run = SubagentRun(
            id=run_id,
            parent_session_id=config.parent_session_id,
            task=config.task,
            tool_allowlist=config.tool_allowlist,
            session=Session(id=run_id, model_override=config.model),
            config=config,
        )
        self._registry.add(run)
        if executor is not None:
            self._executors[run_id] = executor
        logger.info("Created subagent %s for session %s", run_id, config.parent_session_id)
        return run

    def _spawn(self, run: SubagentRun) -> None:
        task = asyncio.create_task(self._execute_and_announce(run), name=f"subagent-{run.id}")
        self._tasks[run.id] = task

        def _forget(done: asyncio.Task, run_id: str = run.id) -> None:
            if self._tasks.get(run_id) is done:
                del self._tasks[run_id]

        task.add_done_callback(_forget)

    async def _execute_and_announce(self, run: SubagentRun) -> None:
        await self._execute(run)
        if run.status != RunStatus.PAUSED:
            await self._announce(run)

    def _system_prompt(self, config: SubagentConfig) -> str:
        mode = config.thinking_mode or self._settings.subagent_thinking_mode
        return (config.system_prompt or DEFAULT_SUBAGENT_PROMPT) + THINKING_PROMPTS.get(mode, "")

    def _guarded_executor(self, run: SubagentRun, allowed: set[str]) -> ToolExecutor:
        """Reject anything outside the run's catalog, then dispatch."""
        override = self._executors.get(run.id)

        async def _execute(request: ToolRequest, context: ToolContext) -> ToolResult | str:
            if request.name not in allowed:
                logger.warning("Subagent %s requested unavailable tool %s", run.id, request.name)
                return ToolResult(
                    call_id=request.call_id,
                    payload=f"Tool not available to this subagent: {request.name}",
                    is_error=True,
                    tool_name=request.name,
                )
            if override is not None:
                return await override(request, context)
            return await self._dispatcher.dispatch(request, context)

        return _execute

    async def _execute(self, run: SubagentRun) -> None:
        config = run.config
        settings = self._settings
        self._registry.update(
            run.id,
            status=RunStatus.RUNNING,
            started_at=run.started_at or datetime.now(UTC),
        )

        model = config.model or settings.model
        context = ContextWindowManager(
            run.session,
            settings,
            summarizer=self._summarizer,
            embedder=self._embedder,
            hooks=self._hooks,
            model=model,
        )
        if not run.session.turns:
            context.append(Turn(role=TurnRole.USER, content=config.task))

        catalog = self._dispatcher.catalog(allowlist=config.tool_allowlist, exclude_spawning=True)
        allowed = {definition["name"] for definition in catalog}
        loop = ToolLoop(
            self._provider,
            self._dispatcher,
            settings,
            hooks=self._hooks,
            executor=self._guarded_executor(run, allowed),
        )
        timeout = config.timeout_seconds or settings.subagent_timeout

        async def _on_iteration(iteration: int, max_turns: int) -> None:
            await self.update_progress(
                run.id, f"Turn {iteration}/{max_turns}", percent=round((iteration - 1) / max_turns * 100, 1),
            )

        try:
            outcome = await loop.run(
                context,
                system_prompt=self._system_prompt(config),
                catalog=catalog,
                tool_context=ToolContext(session_id=run.parent_session_id, run_id=run.id),
                model=model,
                max_turns=config.max_turns or settings.subagent_max_turns,
                deadline=time.monotonic() + timeout,
                should_stop=run.pause_token.is_set,
                on_iteration=_on_iteration,
            )
        except asyncio.CancelledError:
            if run.status not in FINISHED:
                self._finish(run, RunStatus.FAILED, error="Cancelled", category="cancelled")
            raise
        except Exception as e:
            logger.exception("Subagent %s failed", run.id)
            if run.status not in FINISHED:
                self._finish(run, RunStatus.FAILED, error=str(e), category=classify_error(e))
            return

        run.iterations += outcome.iterations
        if run.status in FINISHED:
            # cancelled while the loop was still running
            return
        if outcome.status == LoopStatus.PAUSED:
            run.pause_token.clear()
            self._registry.update(run.id, status=RunStatus.PAUSED)
            logger.info("Subagent %s paused after %d iterations", run.id, run.iterations)
        elif outcome.status == LoopStatus.TIMED_OUT:
            self._finish(run, RunStatus.FAILED, error=f"Execution timeout ({timeout:.0f}s)", category="timeout")
        else:
            self._finish(run, RunStatus.COMPLETED, result=outcome.text)

    def _finish(
        self,
        run: SubagentRun,
        status: RunStatus,
        *,
        result: str | None = None,
        error: str | None = None,
        category: str | None = None,
    ) -> None:
        self._registry.update(
            run.id,
            status=status,
            result=result,
            error=error,
            error_category=category,
            completed_at=datetime.now(UTC),
        )
        self._executors.pop(run.id, None)
        self._last_progress_announce.pop(run.id, None)
        logger.info(
            "Subagent %s %s after %d iterations%s",
            run.id, status.value, run.iterations, f": {error}" if error else "",
        )
        pruned = self._registry.prune_finished(self._settings.subagent_keep_finished)
        if pruned:
            logger.debug("Pruned %d finished subagent runs", pruned)

    async def _announce(self, run: SubagentRun) -> None:
        if self._announcer is None:
            return
        try:
            await self._announcer(run)
        except Exception:
            logger.exception("Failed to announce subagent %s", run.id)
