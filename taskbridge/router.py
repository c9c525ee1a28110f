"""Entry point for every inbound chat message.

Order of handling:
  dedup -> resolve user -> pending selection -> classify ->
  menu/greeting -> task commands -> agent
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any

from taskbridge.agent_runtime import ToolCallingAgent
from taskbridge.commands import CommandHandler
from taskbridge.db import Database
from taskbridge.dedup import EventDeduplicator
from taskbridge.errors import UpstreamError
from taskbridge.intents import Intent, classify
from taskbridge.menu import build_menu
from taskbridge.messenger.base import Messenger
from taskbridge.models import InboundEvent, User

LOGGER = logging.getLogger(__name__)

RETRY_LATER_REPLY = "⚠️ 系统繁忙，请稍后再试"

_COMMAND_INTENTS = (Intent.VIEW, Intent.COMPLETE, Intent.CREATE)


class Router:
    """Routes one normalized event to the right handler and replies."""

    def __init__(
        self,
        db: Database,
        messenger: Messenger,
        dedup: EventDeduplicator,
        commands: CommandHandler,
        agent: ToolCallingAgent,
        messenger_timeout_seconds: float = 10.0,
    ) -> None:
        self._db = db
        self._messenger = messenger
        self._dedup = dedup
        self._commands = commands
        self._agent = agent
        self._messenger_timeout_seconds = messenger_timeout_seconds

    async def handle(self, event: InboundEvent) -> str | None:
        """Handle `event`. Returns the reply sent, or None when the event was dropped."""

        if self._dedup.seen(event.event_id):
            return None
        if not event.text.strip():
            LOGGER.debug("Empty message %s ignored", event.message_id)
            return None

        try:
            user = await self._resolve_user(event)

            reply = await self._commands.continue_selection(user, event)
            if reply is None:
                intent = classify(event.text)
                LOGGER.info("Message %s from %s classified as %s", event.message_id, user.user_id, intent.value)
                if intent in (Intent.MENU, Intent.GREETING):
                    reply = build_menu(user, is_greeting=intent is Intent.GREETING)
                elif intent in _COMMAND_INTENTS:
                    reply = await self._commands.handle(intent, user, event)
                if reply is None:
                    # The agent delivers its own reply.
                    result = await self._agent.handle_message(event, user)
                    return result.reply
        except (UpstreamError, sqlite3.Error, asyncio.TimeoutError) as exc:
            LOGGER.error("Handling message %s failed: %s", event.message_id, exc)
            reply = RETRY_LATER_REPLY

        await self._reply(event, reply)
        return reply

    async def _reply(self, event: InboundEvent, text: str) -> None:
        try:
            await asyncio.wait_for(
                self._messenger.send_text(event.chat_id, text, id_type="chat_id", reply_to=event.message_id),
                timeout=self._messenger_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Reply to chat %s failed: %s", event.chat_id, exc)

    async def _resolve_user(self, event: InboundEvent) -> User:
        """Find the sender, provisioning a plain user on first contact."""

        open_id = event.sender_open_id
        user = self._db.find_user_by_open_id(open_id)
        if user is not None and user.name and user.platform_user_id:
            return user

        identity = await self._lookup_identity(open_id) or {}
        platform_user_id = identity.get("user_id") or event.sender_user_id
        fields = {
            "open_id": open_id,
            "platform_user_id": platform_user_id,
            "name": identity.get("name"),
            "email": identity.get("email"),
        }

        if user is None:
            # Users pre-registered by email or platform id get linked to this open id.
            user = self._db.find_user_by_email(identity.get("email")) or self._db.find_user_by_platform_id(
                platform_user_id
            )
        if user is not None:
            return self._db.enrich_user(user.user_id, **fields) or user

        LOGGER.info("Auto-provisioning user for open_id=%s", open_id)
        return self._db.upsert_user(
            User(
                user_id=open_id,
                open_id=open_id,
                platform_user_id=platform_user_id,
                name=identity.get("name"),
                email=identity.get("email"),
            )
        )

    async def _lookup_identity(self, open_id: str) -> dict[str, Any] | None:
        try:
            return await asyncio.wait_for(
                self._messenger.get_user_identity(open_id), timeout=self._messenger_timeout_seconds
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Identity lookup for %s failed: %s", open_id, exc)
            return None
