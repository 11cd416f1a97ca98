"""Tests for the subagent-management capabilities exposed to the model."""

import json

import pytest
import pytest_asyncio

from clodds.agent.dispatcher import ToolContext, ToolDispatcher
from clodds.agent.models import ToolRequest
from clodds.agent.subagent_tools import create_subagent_capabilities
from clodds.agent.subagents import RunStatus, SubagentScheduler
from tests.conftest import FakeProvider, text_response


@pytest_asyncio.fixture
async def harness(settings):
    provider = FakeProvider([text_response("BTC is 100.")])
    dispatcher = ToolDispatcher()
    scheduler = SubagentScheduler(provider, dispatcher, settings)
    for capability in create_subagent_capabilities(scheduler):
        dispatcher.register(capability)
    yield dispatcher, scheduler
    await scheduler.shutdown()


async def _call(dispatcher, name, params, session_id="sess-1", run_id=None) -> dict:
    result = await dispatcher.dispatch(
        ToolRequest(name=name, parameters=params, call_id="c1"),
        ToolContext(session_id=session_id, run_id=run_id),
    )
    if result.is_error:
        return {"error": result.payload}
    return json.loads(result.payload)


def test_all_capabilities_flagged_as_spawning(settings):
    scheduler = SubagentScheduler(FakeProvider(), ToolDispatcher(), settings)
    capabilities = create_subagent_capabilities(scheduler)
    assert {c.name for c in capabilities} == {
        "subagent_start", "subagent_status", "subagent_pause", "subagent_resume",
        "subagent_cancel", "subagent_list",
    }
    assert all(c.spawns_subagents for c in capabilities)


@pytest.mark.asyncio
async def test_start_then_status(harness):
    dispatcher, scheduler = harness

    started = await _call(dispatcher, "subagent_start", {"task": "Find the BTC price", "max_turns": 2})
    assert started["status"] == "pending"
    run_id = started["run_id"]

    run = await scheduler.wait_for(run_id, timeout=1)
    assert run.status == RunStatus.COMPLETED
    assert run.parent_session_id == "sess-1"
    assert run.config.max_turns == 2

    status = await _call(dispatcher, "subagent_status", {"run_id": run_id})
    assert status["status"] == "completed"
    assert status["result"] == "BTC is 100."

    listing = await _call(dispatcher, "subagent_list", {})
    assert listing == {"runs": [{"id": run_id, "task": "Find the BTC price", "status": "completed"}]}


@pytest.mark.asyncio
async def test_start_validates_parameters(harness):
    dispatcher, _ = harness
    result = await _call(dispatcher, "subagent_start", {"task": "x", "max_turns": 500})
    assert "max_turns" in result["error"]


@pytest.mark.asyncio
async def test_cannot_start_from_inside_a_run(harness):
    dispatcher, scheduler = harness
    result = await _call(dispatcher, "subagent_start", {"task": "recurse"}, run_id="sub_parent")
    assert result == {"error": "Subagents cannot start other subagents"}
    assert len(scheduler.registry) == 0


@pytest.mark.asyncio
async def test_other_session_cannot_control_run(harness):
    dispatcher, scheduler = harness
    started = await _call(dispatcher, "subagent_start", {"task": "Find the BTC price"})
    await scheduler.wait_for(started["run_id"], timeout=1)

    for name in ("subagent_status", "subagent_pause", "subagent_resume", "subagent_cancel"):
        result = await _call(dispatcher, name, {"run_id": started["run_id"]}, session_id="sess-2")
        assert "not found" in result["error"]
    assert await _call(dispatcher, "subagent_list", {}, session_id="sess-2") == {"runs": []}


@pytest.mark.asyncio
async def test_pause_and_resume_finished_run_report_false(harness):
    dispatcher, scheduler = harness
    started = await _call(dispatcher, "subagent_start", {"task": "Find the BTC price"})
    await scheduler.wait_for(started["run_id"], timeout=1)

    paused = await _call(dispatcher, "subagent_pause", {"run_id": started["run_id"]})
    resumed = await _call(dispatcher, "subagent_resume", {"run_id": started["run_id"]})
    assert paused == {"run_id": started["run_id"], "pause_requested": False}
    assert resumed == {"run_id": started["run_id"], "resumed": False}


@pytest.mark.asyncio
async def test_cancel_finished_run_reports_false(harness):
    dispatcher, scheduler = harness
    started = await _call(dispatcher, "subagent_start", {"task": "Find the BTC price"})
    await scheduler.wait_for(started["run_id"], timeout=1)

    cancelled = await _call(dispatcher, "subagent_cancel", {"run_id": started["run_id"]})

    assert cancelled == {"run_id": started["run_id"], "cancelled": False}
    assert scheduler.status(started["run_id"], "sess-1").status == RunStatus.COMPLETED
