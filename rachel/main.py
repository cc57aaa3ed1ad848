"""Rachel agent entry point.

Initializes all components and starts the server:
  Settings -> AnthropicClient -> Compactor -> AgentLoop -> Queue -> Registry -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from rachel.agent.compaction import ConversationCompactor, Summarizer, TokenEstimator
from rachel.agent.loop import AgentLoop
from rachel.agent.provider import AnthropicClient
from rachel.agent.queue import ChatRequestQueue
from rachel.agent.registry import RunnerRegistry
from rachel.agent.tools import ToolDispatcher
from rachel.config import Settings
from rachel.usage import UsageTracker

logger = logging.getLogger(__name__)


async def create_components(
    settings: Settings,
    dispatcher: ToolDispatcher | None = None,
) -> dict:
    """Initialize all components in dependency order.

    1. AnthropicClient - model collaborator (httpx)
    2. Summarizer + ConversationCompactor
    3. ToolDispatcher + AgentLoop - turn executor
    4. UsageTracker, ChatRequestQueue
    5. RunnerRegistry - one AgentRunner per chat
    """
    client = AnthropicClient(settings)
    await client.start()

    summarizer = Summarizer(client, settings)
    compactor = ConversationCompactor(
        settings, summarizer, TokenEstimator(settings.chars_per_token)
    )

    dispatcher = dispatcher or ToolDispatcher()
    executor = AgentLoop(client, dispatcher, settings)

    usage = UsageTracker()
    queue = ChatRequestQueue()
    registry = RunnerRegistry(settings, compactor, executor, queue, usage=usage)

    return {
        "client": client,
        "dispatcher": dispatcher,
        "usage": usage,
        "queue": queue,
        "registry": registry,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Rachel...")

    queue = components.get("queue")
    if queue:
        await queue.close()

    registry = components.get("registry")
    if registry:
        await registry.close()

    client = components.get("client")
    if client:
        await client.close()

    logger.info("Rachel shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components live for the app's lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Rachel started: model=%s, context=%d tokens (compact at %.0f%%), sessions=%s",
            settings.model,
            settings.max_context_tokens,
            settings.compaction_threshold * 100,
            settings.sessions_dir,
        )
        yield
        await shutdown_components(components)

    from rachel.api.rest import create_app

    return create_app(
        registry=_LazyProxy(components, "registry"),
        usage=_LazyProxy(components, "usage"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized: lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)

    def __len__(self):
        return len(self._resolve())


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Rachel (model %s)", settings.model)
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set, "
            "/chat endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
