"""Application entrypoint.

Settings -> Database -> Messenger/LLM -> services -> Router -> Starlette -> uvicorn
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from taskbridge.agent_runtime import ToolCallingAgent
from taskbridge.assigner import WorkloadAssigner
from taskbridge.commands import CommandHandler
from taskbridge.config import Settings, load_settings
from taskbridge.db import Database
from taskbridge.dedup import EventDeduplicator, InMemoryTTLCache
from taskbridge.llm.openrouter import OpenRouterProvider
from taskbridge.messenger.feishu import FeishuMessenger
from taskbridge.router import Router
from taskbridge.sessions import SessionStore
from taskbridge.tasks import TaskService
from taskbridge.tools.registry import ToolRegistry
from taskbridge.tools.task_tools import CompleteTaskTool, CreateTaskTool, ListTasksTool, SendMessageTool
from taskbridge.webhook import create_app

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)


def build_app(settings: Settings) -> Starlette:
    """Wire every layer and return the ASGI app."""

    db = Database(settings.database_path)
    db.initialize()

    messenger = FeishuMessenger(
        app_id=settings.feishu_app_id,
        app_secret=settings.feishu_app_secret,
        base_url=settings.feishu_base_url,
        timeout_seconds=settings.messenger_timeout_seconds,
    )
    provider = OpenRouterProvider(
        api_key=settings.openrouter_api_key,
        model=settings.openrouter_model,
        base_url=settings.openrouter_base_url,
        timeout_seconds=settings.llm_timeout_seconds,
    )

    tasks = TaskService(
        db,
        messenger,
        assigner=WorkloadAssigner(db),
        default_deadline_days=settings.default_deadline_days,
        notify_timeout_seconds=settings.messenger_timeout_seconds,
    )
    sessions = SessionStore(db, ttl_seconds=settings.session_ttl_seconds)

    tools = ToolRegistry(db)
    tools.register(ListTasksTool(db, tasks))
    tools.register(CreateTaskTool(db, tasks))
    tools.register(CompleteTaskTool(db, tasks))
    tools.register(SendMessageTool(messenger, timeout_seconds=settings.messenger_timeout_seconds))

    agent = ToolCallingAgent(
        db=db,
        llm=provider,
        tool_registry=tools,
        messenger=messenger,
        max_rounds=settings.agent_max_rounds,
        history_window=settings.history_window_messages,
        max_concurrency=settings.agent_max_concurrency,
        queue_timeout_seconds=settings.agent_queue_timeout_seconds,
        llm_timeout_seconds=settings.llm_timeout_seconds,
        messenger_timeout_seconds=settings.messenger_timeout_seconds,
    )
    dedup = EventDeduplicator(
        InMemoryTTLCache(ttl_seconds=settings.dedup_ttl_seconds, max_entries=settings.dedup_max_entries)
    )
    router = Router(
        db=db,
        messenger=messenger,
        dedup=dedup,
        commands=CommandHandler(db, tasks, sessions),
        agent=agent,
        messenger_timeout_seconds=settings.messenger_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        removed = sessions.cleanup()
        if removed:
            LOGGER.info("Removed %d expired sessions", removed)
        sweeper = asyncio.create_task(
            dedup.run_sweeper(settings.dedup_sweep_interval_seconds), name="dedup-sweeper"
        )
        try:
            yield
        finally:
            dedup.stop()
            await sweeper
            await tasks.drain()
            await messenger.aclose()
            LOGGER.info("TaskBridge shutdown complete")

    return create_app(router, lifespan=lifespan)


def main() -> None:
    """Load settings, build the app and serve it."""

    settings = load_settings()
    LOGGER.info("Starting TaskBridge on %s:%d (model %s)", settings.webhook_host, settings.webhook_port, settings.openrouter_model)
    uvicorn.run(build_app(settings), host=settings.webhook_host, port=settings.webhook_port)


if __name__ == "__main__":
    main()
