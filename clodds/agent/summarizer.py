"""Default Summarizer -- asks the background model for a checkpoint summary.

Used by ContextWindowManager.compact(). Input that already carries an
"## Existing Summary" section gets the update prompt so earlier facts are
preserved instead of re-summarized from scratch.
"""

from __future__ import annotations

import logging

from clodds.agent.models import Turn, TurnRole
from clodds.agent.protocols import ModelProvider
from clodds.config import Settings

logger = logging.getLogger(__name__)

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
Be brief. Prioritize precision over completeness.

## Goal
[1-2 sentences]

## Progress
- [What was asked, answered, or done]

## Key Facts
- [Markets, symbols, prices, amounts, ids, decisions the user made]

## Open Items
- [Unanswered questions, pending actions]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
Be brief. If space is short, prioritize recent progress, then key facts.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new progress, facts, open items
3. PRESERVE exact symbols, amounts, ids and error messages
4. Use SAME format as existing summary

Output ONLY the updated summary."""

_EXISTING_SUMMARY_MARKER = "## Existing Summary"


class LLMSummarizer:
    """Summarizer backed by a ModelProvider, using the background model."""

    def __init__(self, provider: ModelProvider, settings: Settings) -> None:
        self._provider = provider
        self._settings = settings

    async def summarize(self, text: str) -> str:
        system = (
            UPDATE_SYSTEM_PROMPT
            if text.startswith(_EXISTING_SUMMARY_MARKER)
            else CHECKPOINT_SYSTEM_PROMPT
        )
        response = await self._provider.submit(
            [Turn(role=TurnRole.USER, content=text)],
            system,
            None,
            self._settings.summary_max_tokens,
            model=self._settings.background_model,
        )
        summary = response.text.strip()
        logger.debug("Summarized %d chars into %d chars", len(text), len(summary))
        return summary
