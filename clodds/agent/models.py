"""Shared data models for the agent runtime.

Kept free of runtime imports so that context, loop, orchestrator and
subagents can all depend on it without cycles.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


@dataclass
class ToolRequest:
    """A tool call requested by the model."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")


@dataclass
class ToolResult:
    """Outcome of one dispatched ToolRequest."""

    call_id: str
    payload: str
    is_error: bool = False
    tool_name: str = ""
    duration_ms: int | None = None


@dataclass
class Turn:
    """One unit of a transcript.

    approx_tokens is fixed when the turn enters a transcript, so a
    session's token total is always the sum of its turns.
    """

    role: TurnRole
    content: str
    approx_tokens: int = 0
    tool_calls: list[ToolRequest] = field(default_factory=list)  # assistant turns
    call_id: str | None = None  # tool_result turns
    tool_name: str | None = None
    is_error: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_tool_result(cls, result: ToolResult) -> Turn:
        return cls(
            role=TurnRole.TOOL_RESULT,
            content=result.payload,
            call_id=result.call_id,
            tool_name=result.tool_name,
            is_error=result.is_error,
        )


@dataclass
class Session:
    """One conversation thread. Mutated only by the code handling it."""

    id: str
    participant_id: str = ""
    channel_key: str = ""
    turns: list[Turn] = field(default_factory=list)
    model_override: str | None = None
    compaction_count: int = 0
    last_checkpoint_summary: str | None = None

    @property
    def total_tokens(self) -> int:
        return sum(t.approx_tokens for t in self.turns)


@dataclass
class CompactionResult:
    tokens_before: int
    tokens_after: int
    removed_turn_count: int
    summary_text: str | None
    success: bool
    reason: str | None = None


@dataclass
class ContextGuard:
    """Result of a context budget check."""

    should_compact: bool
    percent_used: float
    current_tokens: int
    max_tokens: int
    allowed: bool
    warning: str | None = None


@dataclass
class ModelResponse:
    """Parsed model response."""

    text: str
    tool_calls: list[ToolRequest] = field(default_factory=list)
    stop_reason: str = "end_turn"  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class StreamEvent:
    """A single event from a streaming model response."""

    type: str  # text_delta, tool_start, tool_input_delta, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] | None = None


@dataclass
class IncomingMessage:
    """A user message arriving from a chat surface."""

    text: str
    participant_id: str = ""
    channel_key: str = ""
    session_id: str | None = None
