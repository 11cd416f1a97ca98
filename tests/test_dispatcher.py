"""Tests for ToolDispatcher: registration, catalog filtering, validation, error capture."""

import json

import pytest
from pydantic import BaseModel, Field

from clodds.agent.dispatcher import Capability, ToolContext, ToolDispatcher
from clodds.agent.models import ToolRequest


class PriceParams(BaseModel):
    symbol: str = Field(..., min_length=1)
    venue: str | None = None


async def get_price(symbol: str, venue: str | None = None) -> dict:
    return {"symbol": symbol, "price": 61000.5, "venue": venue or "any"}


async def whoami(context: ToolContext) -> str:
    return f"{context.session_id}/{context.participant_id}"


async def broken(**params) -> str:
    raise RuntimeError("exchange offline")


class FakeBackend:
    def __init__(self):
        self.calls = []

    async def invoke(self, name, params):
        self.calls.append((name, params))
        if name == "search_markets":
            return {"markets": ["Will BTC hit 100k?"]}
        return {"error": f"{name} is not configured"}


@pytest.fixture
def dispatcher():
    d = ToolDispatcher()
    d.register(Capability("get_price", "Current price", get_price, params_model=PriceParams))
    d.register(Capability("whoami", "Caller identity", whoami))
    d.register(Capability(
        "broken", "Always fails", broken,
        input_schema={"type": "object", "properties": {"x": {"type": "string"}}, "required": ["x"]},
    ))
    d.register(Capability("subagent_start", "Spawn", whoami, spawns_subagents=True))
    return d


@pytest.fixture
def ctx():
    return ToolContext(session_id="sess-1", participant_id="alice")


class TestCatalog:
    def test_definitions_use_api_format(self, dispatcher):
        catalog = {d["name"]: d for d in dispatcher.catalog()}
        assert set(catalog) == {"get_price", "whoami", "broken", "subagent_start"}
        schema = catalog["get_price"]["input_schema"]
        assert schema["required"] == ["symbol"]
        assert catalog["whoami"]["input_schema"] == {"type": "object", "properties": {}}

    def test_allowlist_filters(self, dispatcher):
        names = [d["name"] for d in dispatcher.catalog(allowlist=["get_price", "missing"])]
        assert names == ["get_price"]

    def test_exclude_spawning(self, dispatcher):
        names = [d["name"] for d in dispatcher.catalog(exclude_spawning=True)]
        assert "subagent_start" not in names
        assert "get_price" in names


class TestDispatch:
    @pytest.mark.asyncio
    async def test_success_serializes_dict(self, dispatcher, ctx):
        result = await dispatcher.dispatch(
            ToolRequest(name="get_price", parameters={"symbol": "BTC-USD"}, call_id="c1"), ctx,
        )
        assert not result.is_error
        assert result.call_id == "c1"
        assert result.tool_name == "get_price"
        assert json.loads(result.payload) == {"symbol": "BTC-USD", "price": 61000.5, "venue": "any"}
        assert result.duration_ms is not None

    @pytest.mark.asyncio
    async def test_context_injected_when_declared(self, dispatcher, ctx):
        result = await dispatcher.dispatch(ToolRequest(name="whoami", call_id="c2"), ctx)
        assert result.payload == "sess-1/alice"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self, dispatcher, ctx):
        result = await dispatcher.dispatch(ToolRequest(name="nope", call_id="c3"), ctx)
        assert result.is_error
        assert result.payload == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_invalid_params_never_reach_handler(self, dispatcher, ctx):
        result = await dispatcher.dispatch(
            ToolRequest(name="get_price", parameters={"symbol": ""}, call_id="c4"), ctx,
        )
        assert result.is_error
        assert result.payload.startswith("Tool error: get_price: invalid parameters")
        assert "symbol" in result.payload

    @pytest.mark.asyncio
    async def test_missing_required_schema_param(self, dispatcher, ctx):
        result = await dispatcher.dispatch(ToolRequest(name="broken", parameters={}, call_id="c5"), ctx)
        assert result.is_error
        assert "missing required parameters: x" in result.payload

    @pytest.mark.asyncio
    async def test_handler_exception_captured(self, dispatcher, ctx):
        result = await dispatcher.dispatch(
            ToolRequest(name="broken", parameters={"x": "1"}, call_id="c6"), ctx,
        )
        assert result.is_error
        assert result.payload == "Tool error: broken: exchange offline"


class TestBackend:
    @pytest.mark.asyncio
    async def test_backend_capabilities_route_through_invoke(self, ctx):
        backend = FakeBackend()
        dispatcher = ToolDispatcher()
        names = dispatcher.register_backend(backend, [
            {"name": "search_markets", "description": "Search", "input_schema": {
                "type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"],
            }},
            {"name": "place_order"},
        ])
        assert names == ["search_markets", "place_order"]

        ok = await dispatcher.dispatch(
            ToolRequest(name="search_markets", parameters={"query": "btc"}, call_id="c1"), ctx,
        )
        assert not ok.is_error
        assert json.loads(ok.payload) == {"markets": ["Will BTC hit 100k?"]}

        failed = await dispatcher.dispatch(ToolRequest(name="place_order", call_id="c2"), ctx)
        assert failed.is_error
        assert failed.payload == "place_order is not configured"
        assert backend.calls == [("search_markets", {"query": "btc"}), ("place_order", {})]
