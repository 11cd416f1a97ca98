"""Clodds agent entry point.

Wires all components and starts the server:
  Settings -> Provider -> Summarizer/Embeddings -> Dispatcher -> Hooks
  -> RateLimiter -> SubagentScheduler -> Orchestrator -> App -> Uvicorn

Network clients and background tasks are started and stopped by the
Starlette lifespan, on the same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from clodds.agent.dispatcher import ToolDispatcher
from clodds.agent.embeddings import EmbeddingProvider
from clodds.agent.orchestrator import ConversationOrchestrator
from clodds.agent.provider import AnthropicProvider
from clodds.agent.rate_limit import RateLimiter
from clodds.agent.store import InMemorySessionStore
from clodds.agent.subagent_tools import create_subagent_capabilities
from clodds.agent.subagents import RunRegistry, SubagentScheduler
from clodds.agent.summarizer import LLMSummarizer
from clodds.config import Settings
from clodds.hooks import HookRegistry

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Construct all components in dependency order. Nothing is started."""
    provider = AnthropicProvider(settings)
    summarizer = LLMSummarizer(provider, settings)

    embedding_provider = None
    if settings.dedupe_enabled and settings.openai_api_key:
        embedding_provider = EmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            batch_size=settings.embedding_batch_size,
        )
    elif settings.dedupe_enabled:
        logger.warning("dedupe_enabled but OPENAI_API_KEY not set -- semantic dedupe disabled")

    dispatcher = ToolDispatcher()
    hooks = HookRegistry()
    rate_limiter = RateLimiter(
        settings.rate_limit_window,
        settings.rate_limit_max_requests,
        sweep_interval=settings.rate_limit_sweep_interval,
    )
    scheduler = SubagentScheduler(
        provider,
        dispatcher,
        settings,
        registry=RunRegistry(),
        hooks=hooks,
        summarizer=summarizer,
        embedder=embedding_provider,
    )
    for capability in create_subagent_capabilities(scheduler):
        dispatcher.register(capability)

    orchestrator = ConversationOrchestrator(
        provider,
        dispatcher,
        settings,
        store=InMemorySessionStore(settings.max_sessions),
        hooks=hooks,
        rate_limiter=rate_limiter,
        scheduler=scheduler,
        summarizer=summarizer,
        embedder=embedding_provider,
    )
    scheduler.set_announcer(orchestrator.announce_subagent)

    return {
        "provider": provider,
        "summarizer": summarizer,
        "embedding_provider": embedding_provider,
        "dispatcher": dispatcher,
        "hooks": hooks,
        "rate_limiter": rate_limiter,
        "scheduler": scheduler,
        "orchestrator": orchestrator,
    }


async def start_components(components: dict) -> None:
    await components["provider"].start()
    await components["orchestrator"].start()


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Clodds...")

    orchestrator = components.get("orchestrator")
    if orchestrator:
        await orchestrator.stop()

    embedding_provider = components.get("embedding_provider")
    if embedding_provider:
        await embedding_provider.close()

    provider = components.get("provider")
    if provider:
        await provider.close()

    logger.info("Clodds shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with a lifespan that owns the components."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)
        app.state.components = components
        logger.info("Clodds started: %s", settings.agent_id)
        logger.info(
            "API: model=%s, max_turns=%d, context=%d tokens",
            settings.model,
            settings.max_turns,
            settings.context_max_tokens,
        )
        yield
        await shutdown_components(components)

    from clodds.api.rest import create_app

    return create_app(components["orchestrator"], settings, lifespan=lifespan)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Clodds agent: %s", settings.agent_id)
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- /chat endpoints will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
