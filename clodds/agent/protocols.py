"""Protocols for the external collaborators the runtime talks to.

Concrete implementations live elsewhere (provider.py, summarizer.py,
embeddings.py, store.py) or outside this package entirely (chat
transports, durable session stores, capability backends).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from clodds.agent.models import ModelResponse, Session, StreamEvent, Turn


class ModelProvider(Protocol):
    """Language-model backend."""

    async def submit(
        self,
        turns: Sequence[Turn],
        system_prompt: str,
        tool_catalog: list[dict[str, Any]] | None,
        max_output_tokens: int,
        model: str | None = None,
    ) -> ModelResponse: ...

    def stream(
        self,
        turns: Sequence[Turn],
        system_prompt: str,
        tool_catalog: list[dict[str, Any]] | None,
        max_output_tokens: int,
        model: str | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


class CapabilityBackend(Protocol):
    """Black-box capability host. Never raises across the boundary;
    internal failures come back as an {"error": "..."} payload."""

    async def invoke(self, name: str, params: dict[str, Any]) -> Any: ...


class Summarizer(Protocol):
    async def summarize(self, text: str) -> str: ...


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float: ...


@runtime_checkable
class Transport(Protocol):
    """Chat surface for one conversation."""

    supports_edit: bool

    async def send(self, text: str) -> str | int | None: ...

    async def edit(self, message_id: str | int, text: str) -> None: ...


class SessionStore(Protocol):
    async def get(self, session_id: str) -> Session | None: ...

    async def save(self, session: Session) -> None: ...

    async def delete(self, session_id: str) -> None: ...


@dataclass
class ContextSection:
    title: str
    content: str


class ContextSource(Protocol):
    """Supplies memory/context sections for the system prompt."""

    async def sections_for(self, session: Session, user_text: str) -> list[ContextSection]: ...
