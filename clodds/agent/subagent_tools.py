"""Subagent-management capabilities exposed to the model.

All of them are flagged spawns_subagents, so subagent runs never see them
in their catalog and cannot spawn or steer other runs.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from clodds.agent.dispatcher import Capability, ToolContext
from clodds.agent.subagents import SubagentConfig, SubagentScheduler
from clodds.errors import SubagentAlreadyRunning, SubagentNotFound

logger = logging.getLogger(__name__)


class StartParams(BaseModel):
    task: str = Field(..., min_length=1, description="What the subagent should do, in full.")
    tools: list[str] | None = Field(None, description="Capability names it may use. Omit for all.")
    max_turns: int | None = Field(None, ge=1, le=50, description="Model submissions it may make.")
    timeout_seconds: float | None = Field(None, gt=0, le=3600, description="Wall-clock limit.")


class RunParams(BaseModel):
    run_id: str = Field(..., description="Id returned by subagent_start.")


def create_subagent_capabilities(scheduler: SubagentScheduler) -> list[Capability]:
    """Capabilities bound to one scheduler."""

    async def subagent_start(
        context: ToolContext,
        task: str,
        tools: list[str] | None = None,
        max_turns: int | None = None,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        if context.run_id is not None:
            return {"error": "Subagents cannot start other subagents"}
        run = scheduler.start_background(SubagentConfig(
            task=task,
            parent_session_id=context.session_id,
            tool_allowlist=tools,
            max_turns=max_turns,
            timeout_seconds=timeout_seconds,
        ))
        return {"run_id": run.id, "status": run.status.value}

    async def subagent_status(context: ToolContext, run_id: str) -> dict[str, Any]:
        try:
            return scheduler.status(run_id, context.session_id).to_dict()
        except SubagentNotFound as e:
            return {"error": str(e)}

    async def subagent_pause(context: ToolContext, run_id: str) -> dict[str, Any]:
        try:
            paused = scheduler.pause(run_id, context.session_id)
        except SubagentNotFound as e:
            return {"error": str(e)}
        return {"run_id": run_id, "pause_requested": paused}

    async def subagent_resume(context: ToolContext, run_id: str) -> dict[str, Any]:
        try:
            resumed = scheduler.resume(run_id, context.session_id)
        except (SubagentNotFound, SubagentAlreadyRunning) as e:
            return {"error": str(e)}
        return {"run_id": run_id, "resumed": resumed}

    async def subagent_cancel(context: ToolContext, run_id: str) -> dict[str, Any]:
        try:
            cancelled = scheduler.cancel(run_id, context.session_id)
        except SubagentNotFound as e:
            return {"error": str(e)}
        return {"run_id": run_id, "cancelled": cancelled}

    async def subagent_list(context: ToolContext) -> dict[str, Any]:
        runs = scheduler.registry.list(parent_session_id=context.session_id)
        return {"runs": [{"id": r.id, "task": r.task, "status": r.status.value} for r in runs]}

    return [
        Capability(
            name="subagent_start",
            description=(
                "Start a background subagent for a self-contained task. Returns a "
                "run_id immediately; you will be told when it finishes."
            ),
            handler=subagent_start,
            params_model=StartParams,
            spawns_subagents=True,
        ),
        Capability(
            name="subagent_status",
            description="Status, progress and result of a subagent run.",
            handler=subagent_status,
            params_model=RunParams,
            spawns_subagents=True,
        ),
        Capability(
            name="subagent_pause",
            description="Pause a running subagent at its next safe point.",
            handler=subagent_pause,
            params_model=RunParams,
            spawns_subagents=True,
        ),
        Capability(
            name="subagent_resume",
            description="Resume a paused subagent.",
            handler=subagent_resume,
            params_model=RunParams,
            spawns_subagents=True,
        ),
        Capability(
            name="subagent_cancel",
            description="Cancel a subagent run for good. Use pause if you may want it back.",
            handler=subagent_cancel,
            params_model=RunParams,
            spawns_subagents=True,
        ),
        Capability(
            name="subagent_list",
            description="List subagent runs started from this conversation.",
            handler=subagent_list,
            input_schema={"type": "object", "properties": {}},
            spawns_subagents=True,
        ),
    ]
