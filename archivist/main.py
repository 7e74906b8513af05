"""Archivist entry point.

Initializes all components and starts the server:
  Settings -> Storage -> ToolRegistry -> LLM client -> Compressor -> Runner -> App -> Uvicorn

Uses Starlette lifespan so component lifecycle runs on the same event
loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial

import uvicorn
from starlette.applications import Starlette

from archivist.api.builtin_tools import load_builtin_tools
from archivist.api.compaction import HistoryCompressor
from archivist.api.llm import ChatCompletionsClient
from archivist.api.prompts import PromptBuilder
from archivist.api.runner import AgentRunner
from archivist.api.tools import ToolRegistry
from archivist.config import Settings
from archivist.storage.database import Database
from archivist.storage.repository import ConversationRepository, InMemoryConversationRepository

logger = logging.getLogger(__name__)


async def create_repository(
    settings: Settings,
) -> tuple[ConversationRepository, Database | None]:
    """Pick the storage backend from settings."""
    if settings.storage_backend == "sql":
        from archivist.storage.sql import SqlConversationRepository

        database = Database(settings)
        await database.connect()
        return SqlConversationRepository(database), database
    return InMemoryConversationRepository(), None


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    repository, database = await create_repository(settings)

    registry = ToolRegistry(
        builtin_loader=partial(load_builtin_tools, settings),
        tool_timeout=settings.tool_timeout,
    )
    registry.initialize()

    llm = ChatCompletionsClient(settings)
    await llm.start()

    compressor = HistoryCompressor(llm, settings)
    runner = AgentRunner(
        repository,
        registry,
        llm,
        settings,
        prompt_builder=PromptBuilder(),
        compressor=compressor,
    )

    return {
        "database": database,
        "repository": repository,
        "registry": registry,
        "llm": llm,
        "compressor": compressor,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Archivist...")

    llm = components.get("llm")
    if llm:
        await llm.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Archivist shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info(
            "Archivist started: storage=%s, model=%s, max_iterations=%d, workspace=%s",
            settings.storage_backend,
            settings.model,
            settings.max_iterations,
            settings.workspace_dir,
        )
        yield
        await shutdown_components(components)

    from archivist.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        registry=_lazy_component(components, "registry"),
        settings=settings,
        compressor=_lazy_component(components, "compressor"),
        database=_lazy_component(components, "database") if settings.storage_backend == "sql" else None,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive component references before the lifespan
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
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Archivist (model %s at %s)", settings.model, settings.llm_base_url)
    if settings.storage_backend == "sql":
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    else:
        logger.info("Storage: in-memory (history is lost on restart)")

    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is not set -- /chat requests will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
