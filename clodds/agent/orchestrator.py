"""Conversation orchestrator -- runs one user turn end to end.

Flow per turn:
  1. Admission check against the rate limiter
  2. message:before hook (may rewrite or cancel the text), then the user
     turn is appended
  3. System prompt: base prompt + context sections, adjusted by
     agent:before_start, capped at max_system_tokens
  4. Tool-use loop (shared with subagents), streamed through the
     transport when it supports editing
  5. message:after / agent:end hooks, session saved

Any failure past admission degrades to one generic message that is also
recorded as the assistant turn, so the transcript stays well-formed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, OrderedDict
from typing import Any

from pydantic import TypeAdapter, ValidationError

from clodds.agent.context import ContextWindowManager
from clodds.agent.dispatcher import ToolContext, ToolDispatcher
from clodds.agent.loop import ToolExecutor, ToolLoop, pending_requests
from clodds.agent.models import IncomingMessage, Session, ToolResult, Turn, TurnRole
from clodds.agent.protocols import (
    ContextSource,
    Embedder,
    ModelProvider,
    SessionStore,
    Summarizer,
    Transport,
)
from clodds.agent.rate_limit import GLOBAL_KEY, RateLimiter
from clodds.agent.store import InMemorySessionStore
from clodds.agent.streaming import StreamingReply
from clodds.agent.subagents import RunStatus, SubagentConfig, SubagentRun, SubagentScheduler
from clodds.config import RELOADABLE, Settings
from clodds.errors import AdmissionDenied, ConfigReloadNoop, GENERIC_FAILURE_MESSAGE
from clodds.hooks import HookContext, HookPoint, HookRegistry

logger = logging.getLogger(__name__)


class ConversationOrchestrator:
    """Entry point for user turns, subagent control and config reload."""

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        store: SessionStore | None = None,
        hooks: HookRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        scheduler: SubagentScheduler | None = None,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
        context_source: ContextSource | None = None,
    ) -> None:
        self._provider = provider
        self._dispatcher = dispatcher
        self._settings = settings
        self._store = store if store is not None else InMemorySessionStore(settings.max_sessions)
        self._hooks = hooks if hooks is not None else HookRegistry()
        self._rate_limiter = rate_limiter or RateLimiter(
            settings.rate_limit_window,
            settings.rate_limit_max_requests,
            sweep_interval=settings.rate_limit_sweep_interval,
        )
        self._summarizer = summarizer
        self._embedder = embedder
        self._context_source = context_source
        if scheduler is None:
            scheduler = SubagentScheduler(
                provider,
                dispatcher,
                settings,
                hooks=self._hooks,
                summarizer=summarizer,
                embedder=embedder,
                announcer=self.announce_subagent,
            )
        self._scheduler = scheduler
        self._loop = ToolLoop(provider, dispatcher, settings, hooks=self._hooks)
        # Per-session turn locks, dropped once no turn holds or awaits them.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        # Last transport per session, bounded like the session store.
        self._transports: OrderedDict[str, Transport] = OrderedDict()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def hooks(self) -> HookRegistry:
        return self._hooks

    @property
    def scheduler(self) -> SubagentScheduler:
        return self._scheduler

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def store(self) -> SessionStore:
        return self._store

    async def start(self) -> None:
        await self._rate_limiter.start()

    async def stop(self) -> None:
        await self._scheduler.shutdown()
        await self._rate_limiter.stop()
        await self._hooks.drain()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def handle_message(
        self,
        message: IncomingMessage,
        session: Session | None = None,
        transport: Transport | None = None,
    ) -> str | None:
        """Resolve the session for an incoming message and run the turn."""
        if session is not None:
            await self._store.save(session)
            session_id = session.id
        elif message.session_id:
            session_id = message.session_id
        elif message.channel_key or message.participant_id:
            session_id = f"{message.channel_key}:{message.participant_id}"
        else:
            session_id = uuid.uuid4().hex
        return await self.handle_turn(
            session_id,
            message.text,
            transport=transport,
            participant_id=message.participant_id or None,
            channel_key=message.channel_key or None,
        )

    async def handle_turn(
        self,
        session_id: str,
        user_text: str,
        *,
        transport: Transport | None = None,
        participant_id: str | None = None,
        channel_key: str | None = None,
    ) -> str | None:
        """Run one user turn.

        Returns the reply text, or None when the reply was already
        delivered through an editable transport or a message:before hook
        cancelled the message. Calls for the same session are queued.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            logger.debug("Session %s busy, queueing turn", session_id)
        self._lock_users[session_id] += 1
        try:
            async with lock:
                return await self._run_turn(session_id, user_text, transport, participant_id, channel_key)
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] <= 0:
                del self._lock_users[session_id]
                self._locks.pop(session_id, None)

    async def _run_turn(
        self,
        session_id: str,
        user_text: str,
        transport: Transport | None,
        participant_id: str | None,
        channel_key: str | None,
    ) -> str | None:
        """message:before runs ahead of appending the user turn, so a rewrite
        is what gets recorded and a cancelled message leaves no turn behind."""
        session = await self._get_or_create_session(session_id, participant_id, channel_key)
        if transport is not None:
            self._remember_transport(session.id, transport)

        denied = self._admit(participant_id or session.participant_id)
        if denied is not None:
            return denied

        before = HookContext(
            hook_point=HookPoint.MESSAGE_BEFORE,
            session=session,
            payload={
                "text": user_text,
                "participant_id": session.participant_id,
                "channel_key": session.channel_key,
            },
        )
        await self._hooks.trigger_with_result(HookPoint.MESSAGE_BEFORE, before)
        if before.blocked:
            logger.info("Message for session %s cancelled: %s", session.id, before.block_reason)
            return None
        text = str(before.payload.get("text", user_text))

        context = self._context_for(session)
        context.append(Turn(role=TurnRole.USER, content=text))

        reply = None
        if transport is not None and transport.supports_edit:
            reply = StreamingReply(
                transport,
                min_interval=self._settings.stream_flush_interval,
                max_length=self._settings.max_message_length,
            )

        try:
            system_prompt = await self._build_system_prompt(session, text, context)
            outcome = await self._loop.run(
                context,
                system_prompt=system_prompt,
                catalog=self._dispatcher.catalog(),
                tool_context=ToolContext(
                    session_id=session.id,
                    participant_id=session.participant_id,
                    channel_key=session.channel_key,
                ),
                model=session.model_override,
                reply=reply,
            )
            if reply is not None:
                await reply.finalize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._fail_turn(session, context, e, reply)

        self._hooks.fire(
            HookPoint.MESSAGE_AFTER,
            HookContext(
                hook_point=HookPoint.MESSAGE_AFTER,
                session=session,
                payload={"text": text, "reply": outcome.text, "status": outcome.status.value},
            ),
        )
        self._hooks.fire(
            HookPoint.AGENT_END,
            HookContext(
                hook_point=HookPoint.AGENT_END,
                session=session,
                payload={
                    "iterations": outcome.iterations,
                    "tool_results": outcome.tool_results,
                    "stats": context.stats(),
                },
            ),
        )
        await self._store.save(session)
        logger.info(
            "Turn done for session %s (%d iterations, %d tool calls, %d tokens)",
            session.id, outcome.iterations, len(outcome.tool_results), session.total_tokens,
        )
        return None if reply is not None else outcome.text

    def _remember_transport(self, session_id: str, transport: Transport) -> None:
        self._transports[session_id] = transport
        self._transports.move_to_end(session_id)
        while len(self._transports) > self._settings.max_sessions:
            self._transports.popitem(last=False)

    def _admit(self, participant_id: str) -> str | None:
        """Rejection message when over budget, None when admitted."""
        if not self._settings.rate_limit_enabled:
            return None
        key = (
            participant_id
            if self._settings.rate_limit_per_participant and participant_id
            else GLOBAL_KEY
        )
        try:
            self._rate_limiter.admit(key)
        except AdmissionDenied as e:
            return e.user_message()
        return None

    async def _get_or_create_session(
        self, session_id: str, participant_id: str | None, channel_key: str | None,
    ) -> Session:
        session = await self._store.get(session_id)
        if session is None:
            session = Session(
                id=session_id,
                participant_id=participant_id or "",
                channel_key=channel_key or "",
            )
            await self._store.save(session)
            logger.info("Created session %s", session_id)
        return session

    def _context_for(self, session: Session) -> ContextWindowManager:
        return ContextWindowManager(
            session,
            self._settings,
            summarizer=self._summarizer,
            embedder=self._embedder,
            hooks=self._hooks,
        )

    async def _build_system_prompt(
        self, session: Session, text: str, context: ContextWindowManager,
    ) -> str:
        sections = []
        if self._context_source is not None:
            try:
                sections = await self._context_source.sections_for(session, text)
            except Exception:
                logger.warning("Context source failed for session %s, continuing without it", session.id)

        ctx = HookContext(
            hook_point=HookPoint.AGENT_BEFORE_START,
            session=session,
            payload={"system_prompt": self._settings.system_prompt, "prepend_context": None},
        )
        await self._hooks.trigger_with_result(HookPoint.AGENT_BEFORE_START, ctx)
        base = ctx.payload.get("system_prompt") or self._settings.system_prompt
        return context.build_system_prompt(base, sections, ctx.payload.get("prepend_context"))

    async def _fail_turn(
        self,
        session: Session,
        context: ContextWindowManager,
        error: Exception,
        reply: StreamingReply | None,
    ) -> str | None:
        logger.error("Turn failed for session %s: %s", session.id, error, exc_info=error)

        # Close any tool requests left open so the transcript stays replayable.
        for request in pending_requests(session.turns):
            context.append(Turn.from_tool_result(ToolResult(
                call_id=request.call_id,
                payload="Tool call aborted",
                is_error=True,
                tool_name=request.name,
            )))
        context.append(Turn(role=TurnRole.ASSISTANT, content=GENERIC_FAILURE_MESSAGE))
        await self._store.save(session)

        self._hooks.fire(
            HookPoint.ERROR,
            HookContext(
                hook_point=HookPoint.ERROR,
                session=session,
                payload={"error": error, "stage": "turn"},
            ),
        )

        if reply is None:
            return GENERIC_FAILURE_MESSAGE
        try:
            await reply.fail(GENERIC_FAILURE_MESSAGE)
        except Exception:
            logger.exception("Could not deliver failure message for session %s", session.id)
        return None

    async def end_session(self, session_id: str) -> None:
        await self._store.delete(session_id)
        self._transports.pop(session_id, None)
        logger.info("Ended session %s", session_id)

    # ------------------------------------------------------------------
    # Subagents
    # ------------------------------------------------------------------

    def start_subagent(
        self, config: SubagentConfig, executor: ToolExecutor | None = None,
    ) -> SubagentRun:
        return self._scheduler.start_background(config, executor)

    def pause(self, run_id: str, session_id: str) -> bool:
        return self._scheduler.pause(run_id, session_id)

    def resume(self, run_id: str, session_id: str) -> bool:
        return self._scheduler.resume(run_id, session_id)

    def cancel(self, run_id: str, session_id: str) -> bool:
        return self._scheduler.cancel(run_id, session_id)

    def status(self, run_id: str, session_id: str) -> SubagentRun:
        return self._scheduler.status(run_id, session_id)

    async def announce_subagent(self, run: SubagentRun) -> None:
        """Tell the parent conversation about progress or the outcome."""
        if run.status == RunStatus.COMPLETED:
            text = f"✅ Subagent {run.id} completed:\n{run.result or ''}".rstrip()
        elif run.status == RunStatus.FAILED:
            text = f"❌ Subagent {run.id} failed: {run.error}"
        elif run.progress is not None:
            text = f"⏳ Subagent {run.id}: {run.progress.message}"
        else:
            return

        transport = self._transports.get(run.parent_session_id)
        if transport is None:
            logger.info("No transport for session %s: %s", run.parent_session_id, text)
            return
        await transport.send(text)

    # ------------------------------------------------------------------
    # Config reload
    # ------------------------------------------------------------------

    def reload_config(self, new_values: dict[str, Any] | Settings) -> list[str]:
        """Apply reloadable settings in place. Returns the changed field names.

        A Settings instance contributes only its reloadable fields; a dict
        naming anything else is rejected. Raises ConfigReloadNoop when no
        value actually changed.
        """
        if isinstance(new_values, Settings):
            values = {k: getattr(new_values, k) for k in RELOADABLE}
        else:
            values = dict(new_values)
            rejected = sorted(set(values) - RELOADABLE)
            if rejected:
                raise ValueError(f"Not reloadable: {', '.join(rejected)}")

        changed: dict[str, Any] = {}
        for name, value in values.items():
            annotation = Settings.model_fields[name].annotation
            try:
                value = TypeAdapter(annotation).validate_python(value)
            except ValidationError as e:
                raise ValueError(f"Invalid value for {name}: {e.errors()[0]['msg']}") from e
            if getattr(self._settings, name) != value:
                changed[name] = value

        if not changed:
            raise ConfigReloadNoop("No reloadable setting changed")

        compact = changed.get("compact_threshold", self._settings.compact_threshold)
        warning = changed.get("warning_threshold", self._settings.warning_threshold)
        if not 0 < compact <= 1:
            raise ValueError("compact_threshold must be in (0, 1]")
        if warning > compact:
            raise ValueError("warning_threshold must be <= compact_threshold")
        if changed.get("min_recent_turns", 1) < 1:
            raise ValueError("min_recent_turns must be >= 1")

        if "rate_limit_window" in changed or "rate_limit_max_requests" in changed:
            self._rate_limiter.reload(
                window_seconds=changed.get("rate_limit_window"),
                max_requests=changed.get("rate_limit_max_requests"),
            )

        for name, value in changed.items():
            setattr(self._settings, name, value)
        logger.info("Config reloaded: %s", ", ".join(f"{k}={v}" for k, v in sorted(changed.items())))
        return sorted(changed)
