"""Anthropic Messages API provider over httpx.

No SDK: requests are built by hand and streamed responses are parsed from
the SSE `data:` lines. Retryable failures (429, 5xx, 529, timeouts,
connection errors) surface as ModelUnavailable so the tool loop can decide
whether a retry is still safe; everything else is ModelRequestError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from typing import Any

import httpx

from clodds.agent.models import ModelResponse, StreamEvent, ToolRequest, Turn, TurnRole
from clodds.config import Settings
from clodds.errors import ModelRequestError, ModelUnavailable

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504, 529})


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one Anthropic SSE event dict into a StreamEvent.

    Pings are skipped. stop_reason arrives in message_delta.delta, not
    message_start. Errors can arrive in-stream on an HTTP 200.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage")
        return StreamEvent(type="message_start", usage=usage)

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", ""),
            usage=data.get("usage"),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


def format_messages(turns: Sequence[Turn]) -> list[dict[str, Any]]:
    """Transcript -> Anthropic messages.

    Tool results travel as user-role tool_result blocks. Consecutive
    same-role turns are merged because the API requires alternation.
    """
    messages: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == TurnRole.TOOL_RESULT:
            role = "user"
            blocks: list[dict[str, Any]] = [{
                "type": "tool_result",
                "tool_use_id": turn.call_id,
                "content": turn.content,
                "is_error": turn.is_error,
            }]
        elif turn.role == TurnRole.ASSISTANT:
            role = "assistant"
            blocks = [{"type": "text", "text": turn.content}] if turn.content else []
            for call in turn.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.call_id,
                    "name": call.name,
                    "input": call.parameters,
                })
            if not blocks:
                blocks = [{"type": "text", "text": "(no response)"}]
        else:
            role = "user"
            blocks = [{"type": "text", "text": turn.content or "(empty)"}]

        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})
    return messages


def parse_response(data: dict[str, Any]) -> ModelResponse:
    """Non-streaming Messages API body -> ModelResponse."""
    text_parts: list[str] = []
    tool_calls: list[ToolRequest] = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(ToolRequest(
                name=block.get("name", ""),
                parameters=block.get("input") or {},
                call_id=block.get("id", ""),
            ))
    return ModelResponse(
        text="".join(text_parts),
        tool_calls=tool_calls,
        stop_reason=data.get("stop_reason") or "end_turn",
        usage=data.get("usage"),
    )


async def collect_stream(
    events: AsyncGenerator[StreamEvent, None],
    on_text: Callable[[str], Awaitable[None]] | None = None,
) -> ModelResponse:
    """Drain a provider stream into a ModelResponse.

    on_text is awaited for every text delta as it arrives.
    """
    text_parts: list[str] = []
    tool_calls: list[ToolRequest] = []
    block_accumulators: dict[int, dict[str, Any]] = {}
    stop_reason = ""
    usage: dict[str, int] = {}

    async for event in events:
        if event.type == "text_delta":
            text_parts.append(event.text)
            if on_text is not None:
                await on_text(event.text)

        elif event.type == "tool_start":
            block_accumulators[event.block_index] = {
                "id": event.tool_id,
                "name": event.tool_name,
                "input_parts": [],
            }

        elif event.type == "tool_input_delta":
            acc = block_accumulators.get(event.block_index)
            if acc:
                acc["input_parts"].append(event.text)

        elif event.type == "block_stop":
            acc = block_accumulators.pop(event.block_index, None)
            if acc:
                input_json = "".join(acc["input_parts"])
                try:
                    parameters = json.loads(input_json) if input_json else {}
                except json.JSONDecodeError:
                    logger.warning("Malformed tool input for %s: %s", acc["name"], input_json[:200])
                    parameters = {}
                tool_calls.append(ToolRequest(name=acc["name"], parameters=parameters, call_id=acc["id"]))

        elif event.type in ("message_start", "done"):
            if event.usage:
                usage.update(event.usage)
            if event.stop_reason:
                stop_reason = event.stop_reason

    return ModelResponse(
        text="".join(text_parts),
        tool_calls=tool_calls,
        stop_reason=stop_reason or ("tool_use" if tool_calls else "end_turn"),
        usage=usage or None,
    )


def _error_from_body(status: int, body: bytes, retry_after: float | None) -> Exception:
    try:
        error = json.loads(body).get("error", {})
        error_type = error.get("type", "unknown")
        error_msg = error.get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode(errors="replace")[:500]

    message = f"Anthropic API error ({status}): {error_type} - {error_msg}"
    if status in RETRYABLE_STATUS:
        return ModelUnavailable(message, retry_after=retry_after)
    return ModelRequestError(message)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class AnthropicProvider:
    """ModelProvider backed by the Anthropic Messages API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info("Anthropic provider initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _build_payload(
        self,
        turns: Sequence[Turn],
        system_prompt: str,
        tool_catalog: list[dict[str, Any]] | None,
        max_output_tokens: int,
        model: str | None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": max_output_tokens,
            "messages": format_messages(turns),
        }
        if system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tool_catalog:
            payload["tools"] = tool_catalog
        if stream:
            payload["stream"] = True
        return payload

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    async def submit(
        self,
        turns: Sequence[Turn],
        system_prompt: str,
        tool_catalog: list[dict[str, Any]] | None,
        max_output_tokens: int,
        model: str | None = None,
    ) -> ModelResponse:
        """One non-streaming call. No retries here; the loop owns retry policy."""
        payload = self._build_payload(turns, system_prompt, tool_catalog, max_output_tokens, model)
        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise ModelUnavailable(f"API request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ModelUnavailable(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise _error_from_body(response.status_code, response.content, _retry_after(response))
        return parse_response(response.json())

    async def stream(
        self,
        turns: Sequence[Turn],
        system_prompt: str,
        tool_catalog: list[dict[str, Any]] | None,
        max_output_tokens: int,
        model: str | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Streaming call. Yields StreamEvents; raises on HTTP or in-stream errors."""
        payload = self._build_payload(
            turns, system_prompt, tool_catalog, max_output_tokens, model, stream=True,
        )
        try:
            async with self._client().stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise _error_from_body(response.status_code, body, _retry_after(response))

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    event = _parse_sse_event(json.loads(line[6:]))
                    if event is None:
                        continue
                    if event.type == "error":
                        if event.text.startswith(("overloaded_error", "api_error", "rate_limit_error")):
                            raise ModelUnavailable(f"Stream error: {event.text}")
                        raise ModelRequestError(f"Stream error: {event.text}")
                    yield event
        except httpx.TimeoutException as e:
            raise ModelUnavailable(f"API stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise ModelUnavailable(f"HTTP error: {e}") from e
