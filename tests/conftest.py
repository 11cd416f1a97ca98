"""Shared fakes and fixtures. No network: every collaborator is scripted."""

import hashlib
import json
import random
from dataclasses import dataclass

import pytest

from clodds.agent.models import ModelResponse, StreamEvent, ToolRequest
from clodds.config import Settings
from clodds.utils import cosine_similarity

# ---------------------------------------------------------------------------
# Model provider
# ---------------------------------------------------------------------------


@dataclass
class StreamFailure:
    """Scripted stream that emits some text and then fails."""

    text: str
    error: Exception


def text_response(text: str) -> ModelResponse:
    return ModelResponse(text=text, stop_reason="end_turn")


def tool_response(*calls: tuple[str, dict, str], text: str = "") -> ModelResponse:
    """ModelResponse requesting (name, parameters, call_id) tool calls."""
    return ModelResponse(
        text=text,
        tool_calls=[ToolRequest(name=n, parameters=p, call_id=c) for n, p, c in calls],
        stop_reason="tool_use",
    )


class FakeProvider:
    """Scripted ModelProvider. Each submission pops the next item:
    a ModelResponse, an Exception to raise, or a StreamFailure."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    def _next(self, turns, system_prompt, tool_catalog, max_output_tokens, model, stream):
        self.calls.append({
            "turns": list(turns),
            "system_prompt": system_prompt,
            "tools": tool_catalog,
            "max_tokens": max_output_tokens,
            "model": model,
            "stream": stream,
        })
        if not self.responses:
            raise AssertionError("FakeProvider ran out of scripted responses")
        return self.responses.pop(0)

    async def submit(self, turns, system_prompt, tool_catalog, max_output_tokens, model=None):
        item = self._next(turns, system_prompt, tool_catalog, max_output_tokens, model, False)
        if isinstance(item, StreamFailure):
            raise item.error
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, turns, system_prompt, tool_catalog, max_output_tokens, model=None):
        item = self._next(turns, system_prompt, tool_catalog, max_output_tokens, model, True)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, StreamFailure):
            yield StreamEvent(type="text_delta", text=item.text)
            raise item.error
        if item.text:
            yield StreamEvent(type="text_delta", text=item.text)
        for index, call in enumerate(item.tool_calls, start=1):
            yield StreamEvent(type="tool_start", tool_name=call.name, tool_id=call.call_id, block_index=index)
            yield StreamEvent(type="tool_input_delta", text=json.dumps(call.parameters), block_index=index)
            yield StreamEvent(type="block_stop", block_index=index)
        yield StreamEvent(type="done", stop_reason=item.stop_reason)
        yield StreamEvent(type="message_stop")


# ---------------------------------------------------------------------------
# Summarizer / embeddings / transport
# ---------------------------------------------------------------------------


class FakeSummarizer:
    def __init__(self, summary: str = "User asked about BTC markets.", error: Exception | None = None):
        self.summary = summary
        self.error = error
        self.inputs: list[str] = []

    async def summarize(self, text: str) -> str:
        self.inputs.append(text)
        if self.error is not None:
            raise self.error
        return self.summary


class MockEmbeddingProvider:
    """Returns deterministic, L2-normalized embeddings seeded from text hash.

    Identical texts produce identical vectors; unrelated texts are close
    to orthogonal.
    """

    def __init__(self, fail: bool = False):
        self.fail = fail

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise RuntimeError("embedding service down")
        h = hashlib.sha256(text.encode()).hexdigest()
        rng = random.Random(h)
        vec = [rng.gauss(0, 1) for _ in range(256)]
        norm = sum(x * x for x in vec) ** 0.5
        return [x / norm for x in vec]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    def cosine_similarity(self, a, b) -> float:
        return cosine_similarity(a, b)


class FakeTransport:
    def __init__(self, supports_edit: bool = True):
        self.supports_edit = supports_edit
        self.sent: list[str] = []
        self.edits: list[tuple[int, str]] = []

    async def send(self, text: str) -> int:
        self.sent.append(text)
        return len(self.sent)

    async def edit(self, message_id, text: str) -> None:
        self.edits.append((message_id, text))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with small limits and no retry delays."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        agent_id="test-agent",
        max_turns=3,
        max_tokens=1024,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        rate_limit_max_requests=100,
    )


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
def transport():
    return FakeTransport()
