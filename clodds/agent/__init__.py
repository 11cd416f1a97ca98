"""Agent runtime -- turns, tool loop, context window, subagents.

Public API:
    ConversationOrchestrator - Runs user turns end to end
    SubagentScheduler        - Background agent runs (start/pause/resume/status)
    ToolDispatcher           - Capability registry and dispatch
    ContextWindowManager     - Budget guard and transcript compaction
    RateLimiter              - Per-participant admission control
    AnthropicProvider        - Messages API client over httpx
"""

from clodds.agent.context import ContextWindowManager
from clodds.agent.dispatcher import Capability, ToolContext, ToolDispatcher
from clodds.agent.models import (
    CompactionResult,
    ContextGuard,
    IncomingMessage,
    ModelResponse,
    Session,
    ToolRequest,
    ToolResult,
    Turn,
    TurnRole,
)
from clodds.agent.orchestrator import ConversationOrchestrator
from clodds.agent.provider import AnthropicProvider
from clodds.agent.rate_limit import RateLimiter
from clodds.agent.subagents import RunStatus, SubagentConfig, SubagentRun, SubagentScheduler

__all__ = [
    "AnthropicProvider",
    "Capability",
    "CompactionResult",
    "ContextGuard",
    "ContextWindowManager",
    "ConversationOrchestrator",
    "IncomingMessage",
    "ModelResponse",
    "RateLimiter",
    "RunStatus",
    "Session",
    "SubagentConfig",
    "SubagentRun",
    "SubagentScheduler",
    "ToolContext",
    "ToolDispatcher",
    "ToolRequest",
    "ToolResult",
    "Turn",
    "TurnRole",
]
