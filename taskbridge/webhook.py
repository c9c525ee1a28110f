"""Feishu event subscription endpoint.

Endpoints:
  POST /webhook/event  - Feishu event callback (url_verification, im.message.receive_v1)
  GET  /health         - Liveness check
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from taskbridge.models import InboundEvent
from taskbridge.router import Router

LOGGER = logging.getLogger(__name__)

MESSAGE_EVENT_TYPE = "im.message.receive_v1"


def parse_message_event(payload: dict[str, Any]) -> InboundEvent | None:
    """Normalize an ``im.message.receive_v1`` payload. None for anything that is not a text message."""

    header = payload.get("header") or {}
    if header.get("event_type") != MESSAGE_EVENT_TYPE:
        return None
    event = payload.get("event") or {}
    message = event.get("message") or {}
    if message.get("message_type") != "text":
        return None

    sender_ids = (event.get("sender") or {}).get("sender_id") or {}
    open_id = sender_ids.get("open_id")
    chat_id = message.get("chat_id")
    if not open_id or not chat_id:
        return None

    try:
        text = json.loads(message.get("content") or "{}").get("text", "")
    except (json.JSONDecodeError, AttributeError):
        LOGGER.warning("Unparseable message content in event %s", header.get("event_id"))
        return None

    create_time = message.get("create_time") or header.get("create_time")
    try:
        timestamp = datetime.fromtimestamp(int(create_time) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        timestamp = datetime.now(timezone.utc)

    return InboundEvent(
        event_id=header.get("event_id") or message.get("message_id") or "",
        chat_id=chat_id,
        message_id=message.get("message_id"),
        sender_open_id=open_id,
        sender_user_id=sender_ids.get("user_id"),
        text=_strip_mentions(text, message.get("mentions") or []),
        timestamp=timestamp,
        chat_type=message.get("chat_type") or "p2p",
    )


def _strip_mentions(text: str, mentions: list[dict[str, Any]]) -> str:
    # Group messages carry "@_user_1" placeholders for each mention.
    for mention in mentions:
        key = mention.get("key")
        if key:
            text = text.replace(key, "")
    return text.strip()


def create_app(router: Router, lifespan: Any | None = None) -> Starlette:
    """Create the Starlette ASGI app."""

    background: set[asyncio.Task[Any]] = set()

    async def route_in_background(event: InboundEvent) -> None:
        try:
            await router.handle(event)
        except Exception:
            LOGGER.exception("Routing event %s failed", event.event_id)

    async def feishu_event(request: Request) -> JSONResponse:
        """POST /webhook/event - acknowledge immediately, route asynchronously."""
        try:
            payload = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        if payload.get("type") == "url_verification":
            return JSONResponse({"challenge": payload.get("challenge")})

        event = parse_message_event(payload)
        if event is not None:
            task = asyncio.create_task(route_in_background(event))
            background.add(task)
            task.add_done_callback(background.discard)
        # Feishu retries anything that is not a 2xx.
        return JSONResponse({"success": True})

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    routes = [
        Route("/webhook/event", feishu_event, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    app = Starlette(**kwargs)
    app.state.background_tasks = background
    return app
