"""Tests for the Anthropic provider: message formatting, SSE parsing, error mapping."""

import json

import httpx
import pytest

from clodds.agent.models import StreamEvent, ToolRequest, Turn, TurnRole
from clodds.agent.provider import (
    AnthropicProvider,
    _parse_sse_event,
    collect_stream,
    format_messages,
    parse_response,
)
from clodds.config import Settings
from clodds.errors import ModelRequestError, ModelUnavailable


def _sse(*events: dict) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return "\n".join(lines).encode()


def _provider(handler) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")
    return AnthropicProvider(Settings(ANTHROPIC_API_KEY="test-key"), http=client)


async def _aiter(events):
    for event in events:
        yield event


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class TestFormatMessages:
    def test_tool_round_trip_shapes(self):
        turns = [
            Turn(role=TurnRole.USER, content="BTC price?"),
            Turn(
                role=TurnRole.ASSISTANT,
                content="Checking.",
                tool_calls=[ToolRequest(name="get_price", parameters={"symbol": "BTC"}, call_id="c1")],
            ),
            Turn(role=TurnRole.TOOL_RESULT, content="61000", call_id="c1", tool_name="get_price"),
            Turn(role=TurnRole.ASSISTANT, content="BTC is 61k."),
        ]
        messages = format_messages(turns)
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
        assert messages[1]["content"] == [
            {"type": "text", "text": "Checking."},
            {"type": "tool_use", "id": "c1", "name": "get_price", "input": {"symbol": "BTC"}},
        ]
        assert messages[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "c1", "content": "61000", "is_error": False},
        ]

    def test_consecutive_same_role_turns_merge(self):
        turns = [
            Turn(role=TurnRole.USER, content="[Previous conversation summary]\n\nold"),
            Turn(role=TurnRole.USER, content="new question"),
        ]
        messages = format_messages(turns)
        assert len(messages) == 1
        assert [b["text"] for b in messages[0]["content"]] == [
            "[Previous conversation summary]\n\nold", "new question",
        ]

    def test_empty_turns_get_placeholders(self):
        messages = format_messages([
            Turn(role=TurnRole.USER, content=""),
            Turn(role=TurnRole.ASSISTANT, content=""),
        ])
        assert messages[0]["content"] == [{"type": "text", "text": "(empty)"}]
        assert messages[1]["content"] == [{"type": "text", "text": "(no response)"}]

    def test_parse_response(self):
        response = parse_response({
            "content": [
                {"type": "text", "text": "Let me check."},
                {"type": "tool_use", "id": "toolu_1", "name": "get_price", "input": {"symbol": "ETH"}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 10, "output_tokens": 5},
        })
        assert response.text == "Let me check."
        assert response.wants_tools
        assert response.tool_calls[0].call_id == "toolu_1"
        assert response.usage == {"input_tokens": 10, "output_tokens": 5}


# ---------------------------------------------------------------------------
# SSE
# ---------------------------------------------------------------------------


class TestParseSseEvent:
    def test_ping_skipped(self):
        assert _parse_sse_event({"type": "ping"}) is None

    def test_text_delta(self):
        event = _parse_sse_event({
            "type": "content_block_delta", "index": 0,
            "delta": {"type": "text_delta", "text": "Hello"},
        })
        assert event.type == "text_delta"
        assert event.text == "Hello"

    def test_tool_start_and_input(self):
        start = _parse_sse_event({
            "type": "content_block_start", "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "get_price"},
        })
        assert (start.type, start.tool_name, start.tool_id, start.block_index) == (
            "tool_start", "get_price", "toolu_1", 1,
        )
        delta = _parse_sse_event({
            "type": "content_block_delta", "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"sym'},
        })
        assert delta.type == "tool_input_delta"
        assert delta.text == '{"sym'

    def test_message_delta_carries_stop_reason(self):
        event = _parse_sse_event({
            "type": "message_delta",
            "delta": {"stop_reason": "end_turn"},
            "usage": {"output_tokens": 12},
        })
        assert event.type == "done"
        assert event.stop_reason == "end_turn"
        assert event.usage == {"output_tokens": 12}

    def test_error_event(self):
        event = _parse_sse_event({
            "type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"},
        })
        assert event.type == "error"
        assert event.text == "overloaded_error: Overloaded"


class TestCollectStream:
    @pytest.mark.asyncio
    async def test_text_and_tool_calls_assembled(self):
        seen = []

        async def on_text(text):
            seen.append(text)

        response = await collect_stream(_aiter([
            StreamEvent(type="message_start", usage={"input_tokens": 20}),
            StreamEvent(type="text_delta", text="Check"),
            StreamEvent(type="text_delta", text="ing."),
            StreamEvent(type="tool_start", tool_name="get_price", tool_id="toolu_1", block_index=1),
            StreamEvent(type="tool_input_delta", text='{"symbol":', block_index=1),
            StreamEvent(type="tool_input_delta", text=' "BTC"}', block_index=1),
            StreamEvent(type="block_stop", block_index=1),
            StreamEvent(type="done", stop_reason="tool_use", usage={"output_tokens": 9}),
        ]), on_text)

        assert seen == ["Check", "ing."]
        assert response.text == "Checking."
        assert response.tool_calls == [ToolRequest(name="get_price", parameters={"symbol": "BTC"}, call_id="toolu_1")]
        assert response.stop_reason == "tool_use"
        assert response.usage == {"input_tokens": 20, "output_tokens": 9}

    @pytest.mark.asyncio
    async def test_malformed_tool_input_becomes_empty(self):
        response = await collect_stream(_aiter([
            StreamEvent(type="tool_start", tool_name="get_price", tool_id="toolu_1", block_index=0),
            StreamEvent(type="tool_input_delta", text='{"symbol', block_index=0),
            StreamEvent(type="block_stop", block_index=0),
        ]))
        assert response.tool_calls[0].parameters == {}
        assert response.stop_reason == "tool_use"


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class TestAnthropicProvider:
    @pytest.mark.asyncio
    async def test_submit_builds_payload_and_parses(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": "hi there"}],
                "stop_reason": "end_turn",
            })

        provider = _provider(handler)
        catalog = [{"name": "get_price", "description": "", "input_schema": {"type": "object"}}]
        response = await provider.submit(
            [Turn(role=TurnRole.USER, content="hello")], "Be brief.", catalog, 256, model="claude-x",
        )

        assert response.text == "hi there"
        assert captured["path"] == "/v1/messages"
        body = captured["body"]
        assert body["model"] == "claude-x"
        assert body["max_tokens"] == 256
        assert body["tools"] == catalog
        assert body["system"][0]["text"] == "Be brief."
        assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hello"}]}]
        assert "stream" not in body

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 529])
    async def test_retryable_status_maps_to_unavailable(self, status):
        def handler(request):
            return httpx.Response(
                status,
                headers={"retry-after": "7"},
                json={"error": {"type": "overloaded_error", "message": "busy"}},
            )

        with pytest.raises(ModelUnavailable) as exc_info:
            await _provider(handler).submit([Turn(role=TurnRole.USER, content="hi")], "", None, 10)
        assert exc_info.value.retry_after == 7.0
        assert str(status) in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_client_error_maps_to_request_error(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})

        with pytest.raises(ModelRequestError, match="invalid_request_error - bad"):
            await _provider(handler).submit([Turn(role=TurnRole.USER, content="hi")], "", None, 10)

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ModelUnavailable):
            await _provider(handler).submit([Turn(role=TurnRole.USER, content="hi")], "", None, 10)

    @pytest.mark.asyncio
    async def test_stream_yields_parsed_events(self):
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 5}}},
            {"type": "ping"},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hi"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 1}},
            {"type": "message_stop"},
        )
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        provider = _provider(handler)
        response = await collect_stream(
            provider.stream([Turn(role=TurnRole.USER, content="hello")], "", None, 10),
        )

        assert captured["body"]["stream"] is True
        assert response.text == "hi"
        assert response.stop_reason == "end_turn"

    @pytest.mark.asyncio
    async def test_in_stream_overload_is_retryable(self):
        body = _sse(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "par"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )

        def handler(request):
            return httpx.Response(200, content=body)

        events = []
        with pytest.raises(ModelUnavailable):
            async for event in _provider(handler).stream([Turn(role=TurnRole.USER, content="x")], "", None, 10):
                events.append(event)
        assert [e.text for e in events] == ["par"]

    @pytest.mark.asyncio
    async def test_stream_http_error_raised_before_events(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "bad key"}})

        with pytest.raises(ModelRequestError, match="401"):
            async for _ in _provider(handler).stream([Turn(role=TurnRole.USER, content="x")], "", None, 10):
                pass

    @pytest.mark.asyncio
    async def test_submit_requires_start(self):
        provider = AnthropicProvider(Settings(ANTHROPIC_API_KEY="test-key"))
        with pytest.raises(RuntimeError, match="start"):
            await provider.submit([Turn(role=TurnRole.USER, content="x")], "", None, 10)
