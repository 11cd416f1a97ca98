"""Context window management -- budget guard and transcript compaction.

Tracks the token weight of one Session's transcript and decides when it
must be compacted. Compaction keeps the most recent turns verbatim (the
head) and replaces everything older (the tail) with a single synopsis
turn produced by the summarizer.

Compaction is all-or-nothing: if summarization fails the transcript is
left exactly as it was and the caller gets success=False.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Sequence

from clodds.agent.models import CompactionResult, ContextGuard, Session, Turn, TurnRole
from clodds.agent.protocols import ContextSection, Embedder, Summarizer
from clodds.agent.tokens import estimate_tokens, estimate_turn_tokens, tokens_to_chars
from clodds.config import Settings
from clodds.errors import CompactionFailed
from clodds.hooks import HookContext, HookPoint, HookRegistry
from clodds.utils import trim_middle

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"

# Floor for a single tool result when the budget is nearly exhausted.
MIN_TOOL_RESULT_TOKENS = 256

_PARAGRAPH_SPLIT = re.compile(r"\n{2,}")


class ContextWindowManager:
    """Owns the budget decisions for one transcript.

    Thresholds are read from settings on every call so a config reload
    takes effect on live sessions.
    """

    def __init__(
        self,
        session: Session,
        settings: Settings,
        *,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
        hooks: HookRegistry | None = None,
        model: str | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._summarizer = summarizer
        self._embedder = embedder
        self._hooks = hooks
        self._model = model or session.model_override or settings.model

    @property
    def session(self) -> Session:
        return self._session

    @property
    def current_tokens(self) -> int:
        return self._session.total_tokens

    @property
    def max_tokens(self) -> int:
        return self._settings.effective_context_tokens

    # ------------------------------------------------------------------
    # Guard
    # ------------------------------------------------------------------

    def check_guard(self, extra_tokens: int = 0) -> ContextGuard:
        """Would current + extra_tokens cross the compaction threshold?"""
        effective_max = self.max_tokens
        current = self.current_tokens + extra_tokens
        percent_used = current / effective_max

        warning = None
        if percent_used >= self._settings.compact_threshold:
            warning = f"Context at {round(percent_used * 100)}% capacity. Compaction required."
        elif percent_used >= self._settings.warning_threshold:
            warning = f"Context at {round(percent_used * 100)}% capacity."

        return ContextGuard(
            should_compact=percent_used >= self._settings.compact_threshold,
            percent_used=percent_used,
            current_tokens=current,
            max_tokens=effective_max,
            allowed=current <= effective_max,
            warning=warning,
        )

    def append(self, turn: Turn) -> ContextGuard:
        """Append a turn (pricing it if needed) and return the new guard."""
        if not turn.approx_tokens:
            turn.approx_tokens = estimate_turn_tokens(turn, self._model)
        self._session.turns.append(turn)
        guard = self.check_guard()
        if guard.should_compact:
            logger.warning(
                "Session %s needs compaction (%d/%d tokens)",
                self._session.id, guard.current_tokens, guard.max_tokens,
            )
        return guard

    def stats(self) -> dict[str, float | int]:
        return {
            "total_tokens": self.current_tokens,
            "percent_used": self.current_tokens / self.max_tokens,
            "turn_count": len(self._session.turns),
            "compaction_count": self._session.compaction_count,
        }

    # ------------------------------------------------------------------
    # Oversized tool results
    # ------------------------------------------------------------------

    def fit_tool_result(self, text: str) -> str:
        """Trim a tool result that alone would eat the remaining budget.

        Cap is tool_result_max_tokens or half the remaining budget,
        whichever is smaller, never below MIN_TOOL_RESULT_TOKENS.
        """
        remaining = self.max_tokens - self.current_tokens
        cap = min(
            self._settings.tool_result_max_tokens,
            max(MIN_TOOL_RESULT_TOKENS, remaining // 2),
        )
        if estimate_tokens(text, self._model) <= cap:
            return text
        trimmed = trim_middle(text, tokens_to_chars(cap, self._model))
        logger.info(
            "Trimmed oversized tool result for session %s: %d -> %d chars",
            self._session.id, len(text), len(trimmed),
        )
        return trimmed

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def split_point(self) -> int:
        """Index where the verbatim head starts. 0 means nothing to compact.

        The head holds at least min_recent_turns turns and grows backwards
        while it stays within keep_recent_ratio of the budget. It never
        starts on a tool result whose request would be summarized away.
        """
        turns = self._session.turns
        min_recent = self._settings.min_recent_turns
        if len(turns) <= min_recent:
            return 0

        start = len(turns) - min_recent
        budget = self.max_tokens * self._settings.keep_recent_ratio
        head_tokens = sum(t.approx_tokens for t in turns[start:])
        while start > 0 and head_tokens + turns[start - 1].approx_tokens <= budget:
            start -= 1
            head_tokens += turns[start].approx_tokens

        while start > 0 and turns[start].role == TurnRole.TOOL_RESULT:
            start -= 1
        return start

    async def compact_if_needed(self, extra_tokens: int = 0) -> CompactionResult | None:
        """Compact when the guard says so, running the compaction hooks.

        Returns None when no compaction was attempted (under threshold or
        blocked by a compaction:before hook).
        """
        guard = self.check_guard(extra_tokens)
        if not guard.should_compact:
            return None

        if self._hooks is not None:
            ctx = HookContext(
                hook_point=HookPoint.COMPACTION_BEFORE,
                session=self._session,
                payload={"percent_used": guard.percent_used, "current_tokens": guard.current_tokens},
            )
            await self._hooks.trigger_with_result(HookPoint.COMPACTION_BEFORE, ctx)
            if ctx.blocked:
                logger.info("Compaction for session %s blocked: %s", self._session.id, ctx.block_reason)
                return None

        result = await self.compact()

        if self._hooks is not None:
            self._hooks.fire(
                HookPoint.COMPACTION_AFTER,
                HookContext(
                    hook_point=HookPoint.COMPACTION_AFTER,
                    session=self._session,
                    payload={"result": result},
                ),
            )
        return result

    async def compact(self) -> CompactionResult:
        """Summarize the tail into one synopsis turn ahead of the head."""
        session = self._session
        tokens_before = self.current_tokens
        split = self.split_point()
        if split <= 0:
            return CompactionResult(
                tokens_before=tokens_before,
                tokens_after=tokens_before,
                removed_turn_count=0,
                summary_text=None,
                success=False,
                reason="nothing to compact",
            )

        start_time = time.monotonic()
        tail = session.turns[:split]
        head = session.turns[split:]

        try:
            if self._summarizer is None:
                raise CompactionFailed("no summarizer configured")
            candidates = await self._dedupe(tail)
            text = self._serialize(candidates)
            if session.last_checkpoint_summary:
                text = (
                    f"## Existing Summary\n\n{session.last_checkpoint_summary}\n\n"
                    f"## New Conversation\n\n{text}"
                )
            summary = (await self._summarize_text(text, 0)).strip()
            if not summary:
                raise CompactionFailed("summarizer returned empty text")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Compaction failed for session %s: %s", session.id, e)
            return CompactionResult(
                tokens_before=tokens_before,
                tokens_after=tokens_before,
                removed_turn_count=0,
                summary_text=None,
                success=False,
                reason=str(e),
            )

        synopsis = Turn(role=TurnRole.USER, content=f"{SUMMARY_PREFIX}\n\n{summary}")
        synopsis.approx_tokens = estimate_turn_tokens(synopsis, self._model)
        session.turns[:] = [synopsis, *head]
        session.compaction_count += 1
        session.last_checkpoint_summary = summary

        tokens_after = self.current_tokens
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compacted session %s: %d turns -> 1 summary + %d recent "
            "(%d -> %d tokens, %d ms, compaction #%d)",
            session.id, len(tail), len(head), tokens_before, tokens_after,
            duration_ms, session.compaction_count,
        )
        return CompactionResult(
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            removed_turn_count=len(tail),
            summary_text=summary,
            success=True,
        )

    async def _dedupe(self, tail: list[Turn]) -> list[Turn]:
        """Drop tail turns nearly identical to a recent kept turn.

        Only shrinks summarizer input; the transcript itself is untouched.
        Any embedding failure disables dedupe for this pass.
        """
        if not self._settings.dedupe_enabled or self._embedder is None or len(tail) < 2:
            return tail

        try:
            embed_batch = getattr(self._embedder, "embed_batch", None)
            if embed_batch is not None:
                vectors = await embed_batch([t.content for t in tail])
            else:
                vectors = await asyncio.gather(*(self._embedder.embed(t.content) for t in tail))
        except Exception:
            logger.warning("Embedding dedupe failed, summarizing full tail")
            return tail

        threshold = self._settings.dedupe_threshold
        window = self._settings.dedupe_window
        kept: list[Turn] = []
        kept_vectors: list[Sequence[float]] = []
        for turn, vector in zip(tail, vectors):
            recent = kept_vectors[-window:]
            if turn.content.strip() and any(
                self._embedder.cosine_similarity(vector, other) >= threshold
                for other in recent
            ):
                continue
            kept.append(turn)
            kept_vectors.append(vector)

        if len(kept) < len(tail):
            logger.debug("Semantic dedupe dropped %d of %d tail turns", len(tail) - len(kept), len(tail))
        return kept

    async def _summarize_text(self, text: str, depth: int) -> str:
        """Summarize text, splitting it first when it exceeds the input limit."""
        assert self._summarizer is not None
        settings = self._settings

        if depth > settings.summary_max_depth:
            max_chars = tokens_to_chars(settings.summary_max_tokens, self._model)
            return text if len(text) <= max_chars else f"{text[:max_chars]}\n\n[...truncated]"

        limit = settings.summary_input_tokens
        if estimate_tokens(text, self._model) <= limit:
            return await self._summarizer.summarize(text)

        chunks: list[list[str]] = []
        current: list[str] = []
        current_tokens = 0
        for part in _PARAGRAPH_SPLIT.split(text):
            if not part.strip():
                continue
            part_tokens = estimate_tokens(part, self._model)
            if current and current_tokens + part_tokens > limit:
                chunks.append(current)
                current, current_tokens = [], 0
            current.append(part)
            current_tokens += part_tokens
        if current:
            chunks.append(current)

        summaries = [
            await self._summarize_text("\n\n".join(chunk), depth + 1) for chunk in chunks
        ]
        return await self._summarize_text("\n\n".join(summaries), depth + 1)

    @staticmethod
    def _serialize(turns: list[Turn]) -> str:
        """Readable transcript text for the summarizer."""
        lines = []
        for turn in turns:
            if turn.content.startswith(SUMMARY_PREFIX):
                continue  # carried via last_checkpoint_summary
            if turn.role == TurnRole.USER:
                lines.append(f"USER: {turn.content}")
            elif turn.role == TurnRole.ASSISTANT:
                text = turn.content
                if turn.tool_calls:
                    calls = ", ".join(c.name for c in turn.tool_calls)
                    text = f"{text}\n[called tools: {calls}]".strip()
                lines.append(f"ASSISTANT: {text}")
            else:
                label = "TOOL ERROR" if turn.is_error else "TOOL"
                lines.append(f"{label} ({turn.tool_name}): {turn.content}")
        return "\n\n".join(lines)

    # ------------------------------------------------------------------
    # System prompt
    # ------------------------------------------------------------------

    def build_system_prompt(
        self,
        base_prompt: str,
        sections: Sequence[ContextSection] = (),
        prepend_context: str | None = None,
    ) -> str:
        """Base prompt + titled sections, capped at max_system_tokens."""
        parts: list[str] = []
        if prepend_context:
            parts.append(prepend_context)
        if base_prompt:
            parts.append(base_prompt)
        for section in sections:
            if section.content:
                parts.append(f"# {section.title}\n{section.content}")

        prompt = "\n\n".join(parts)
        max_tokens = self._settings.max_system_tokens
        if estimate_tokens(prompt, self._model) > max_tokens:
            target_chars = tokens_to_chars(max_tokens, self._model)
            prompt = prompt[:target_chars] + "\n\n[... truncated for brevity]"
        return prompt
