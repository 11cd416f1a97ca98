"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing, against
a real ConversationOrchestrator driven by a scripted FakeProvider.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from clodds.agent.dispatcher import ToolDispatcher
from clodds.agent.orchestrator import ConversationOrchestrator
from clodds.agent.subagents import RunStatus
from clodds.api.rest import create_app
from tests.conftest import FakeProvider, text_response

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def orchestrator(provider, settings):
    orch = ConversationOrchestrator(provider, ToolDispatcher(), settings)
    yield orch
    await orch.stop()


@pytest_asyncio.fixture
async def client(orchestrator, settings):
    app = create_app(orchestrator, settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _sse_payloads(body: str) -> list[dict]:
    return [json.loads(line[6:]) for line in body.splitlines() if line.startswith("data: ")]


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat(client, provider):
    provider.responses.append(text_response("hi there"))

    resp = await client.post("/chat", json={"message": "hello", "session_id": "sess-1"})

    assert resp.status_code == 200
    assert resp.json() == {"response": "hi there", "session_id": "sess-1"}


@pytest.mark.asyncio
async def test_chat_generates_session_id(client, provider):
    provider.responses.append(text_response("hi"))
    resp = await client.post("/chat", json={"message": "hello"})
    assert resp.status_code == 200
    assert resp.json()["session_id"]


@pytest.mark.asyncio
async def test_chat_missing_message(client):
    resp = await client.post("/chat", json={"session_id": "sess-1"})
    assert resp.status_code == 400
    assert "message" in resp.json()["error"]


@pytest.mark.asyncio
async def test_chat_invalid_json(client):
    resp = await client.post("/chat", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_chat_stream(client, provider):
    provider.responses.append(text_response("hi there"))

    resp = await client.post("/chat/stream", json={"message": "hello", "session_id": "sess-1"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    payloads = _sse_payloads(resp.text)
    assert payloads[0] == {"type": "message", "message_id": 1, "text": "hi there"}
    assert payloads[-1] == {"type": "done", "session_id": "sess-1"}


@pytest.mark.asyncio
async def test_chat_stream_rejection_sent_as_message(orchestrator, client, provider):
    orchestrator.reload_config({"rate_limit_max_requests": 1})
    provider.responses.append(text_response("hi"))
    await client.post("/chat", json={"message": "one", "session_id": "sess-1"})

    resp = await client.post("/chat/stream", json={"message": "two", "session_id": "sess-1"})

    payloads = _sse_payloads(resp.text)
    assert payloads[0]["type"] == "message"
    assert payloads[0]["text"].startswith("You're sending messages too quickly")
    assert payloads[-1]["type"] == "done"


@pytest.mark.asyncio
async def test_end_chat(orchestrator, client, provider):
    provider.responses.append(text_response("hi"))
    await client.post("/chat", json={"message": "hello", "session_id": "sess-1"})

    resp = await client.delete("/chat/sess-1")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ended", "session_id": "sess-1"}
    assert await orchestrator.store.get("sess-1") is None


# ---------------------------------------------------------------------------
# Subagents
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_subagent_and_poll(orchestrator, client, provider):
    provider.responses.append(text_response("BTC is 100."))

    resp = await client.post("/subagents", json={"task": "Find BTC", "session_id": "sess-1", "max_turns": 2})

    assert resp.status_code == 202
    run_id = resp.json()["id"]
    assert resp.json()["status"] == "pending"

    run = await orchestrator.scheduler.wait_for(run_id, timeout=1)
    assert run.status == RunStatus.COMPLETED

    status = await client.get(f"/subagents/{run_id}", params={"session_id": "sess-1"})
    assert status.status_code == 200
    assert status.json()["result"] == "BTC is 100."

    other = await client.get(f"/subagents/{run_id}", params={"session_id": "sess-2"})
    assert other.status_code == 404


@pytest.mark.asyncio
async def test_start_subagent_requires_fields(client):
    resp = await client.post("/subagents", json={"task": "Find BTC"})
    assert resp.status_code == 400

    resp = await client.post("/subagents", json={"task": "x", "session_id": "s", "tools": "get_price"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_pause_and_resume_finished_run(orchestrator, client, provider):
    provider.responses.append(text_response("done"))
    resp = await client.post("/subagents", json={"task": "x", "session_id": "sess-1"})
    run_id = resp.json()["id"]
    await orchestrator.scheduler.wait_for(run_id, timeout=1)

    pause = await client.post(f"/subagents/{run_id}/pause", json={"session_id": "sess-1"})
    assert pause.status_code == 409

    resume = await client.post(f"/subagents/{run_id}/resume", json={"session_id": "sess-1"})
    assert resume.status_code == 200
    assert resume.json() == {"status": "finished", "run_id": run_id}


@pytest.mark.asyncio
async def test_unknown_subagent(client):
    owner = {"session_id": "sess-1"}
    assert (await client.get("/subagents/sub_missing", params=owner)).status_code == 404
    for action in ("pause", "resume", "cancel"):
        resp = await client.post(f"/subagents/sub_missing/{action}", json=owner)
        assert resp.status_code == 404


@pytest.mark.asyncio
async def test_subagent_control_requires_session_id(orchestrator, client, provider):
    provider.responses.append(text_response("done"))
    resp = await client.post("/subagents", json={"task": "x", "session_id": "owner"})
    run_id = resp.json()["id"]
    await orchestrator.scheduler.wait_for(run_id, timeout=1)

    status = await client.get(f"/subagents/{run_id}")
    assert status.status_code == 400
    assert "session_id" in status.json()["error"]
    assert "result" not in status.json()
    for action in ("pause", "resume", "cancel"):
        resp = await client.post(f"/subagents/{run_id}/{action}", json={})
        assert resp.status_code == 400


@pytest.mark.asyncio
async def test_cancel_subagent(orchestrator, client, provider):
    release = asyncio.Event()

    async def blocked_submit(*args, **kwargs):
        await release.wait()
        return text_response("too late")

    provider.submit = blocked_submit
    resp = await client.post("/subagents", json={"task": "Find BTC", "session_id": "sess-1"})
    run_id = resp.json()["id"]

    cancel = await client.post(f"/subagents/{run_id}/cancel", json={"session_id": "sess-1"})
    assert cancel.status_code == 200
    assert cancel.json() == {"status": "cancelled", "run_id": run_id}

    status = await client.get(f"/subagents/{run_id}", params={"session_id": "sess-1"})
    assert status.json()["status"] == "failed"
    assert status.json()["error_category"] == "cancelled"

    again = await client.post(f"/subagents/{run_id}/cancel", json={"session_id": "sess-1"})
    assert again.status_code == 409


# ---------------------------------------------------------------------------
# Config and health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_config_reload(client, settings):
    resp = await client.post("/config/reload", json={"max_turns": 6})
    assert resp.status_code == 200
    assert resp.json() == {"changed": ["max_turns"]}
    assert settings.max_turns == 6

    again = await client.post("/config/reload", json={"max_turns": 6})
    assert again.json() == {"changed": []}


@pytest.mark.asyncio
async def test_config_reload_rejects_static_fields(client):
    resp = await client.post("/config/reload", json={"model": "other"})
    assert resp.status_code == 400
    assert "Not reloadable" in resp.json()["error"]


@pytest.mark.asyncio
async def test_health(client, provider):
    provider.responses.append(text_response("hi"))
    await client.post("/chat", json={"message": "hello", "user_id": "alice"})

    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {
        "status": "healthy",
        "agent_id": "test-agent",
        "subagents": 0,
        "rate_limit_keys": 1,
    }
