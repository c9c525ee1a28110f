"""Task tools exposed to the model.

Each tool acts on behalf of the user in `ToolContext` and enforces the same
feature flags as the structured commands.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from taskbridge.db import Database
from taskbridge.errors import NotFound, PermissionDenied
from taskbridge.messenger.base import Messenger
from taskbridge.models import User
from taskbridge.permissions import TASK_COMPLETE, TASK_CREATE, TASK_VIEW, can
from taskbridge.tasks import TaskService
from taskbridge.tools.base import Tool, ToolContext

_ADMIN_ROLES = ("admin", "superadmin")


class ListTasksTool(Tool):
    """List a user's pending tasks."""

    name = "list_tasks"
    description = "List the pending tasks assigned to a user, soonest deadline first."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "open_id": {"type": "string", "description": "open_id of the user whose tasks to list"},
        },
        "required": ["open_id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database, tasks: TaskService) -> None:
        self._db = db
        self._tasks = tasks

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        _require(context.user, TASK_VIEW)
        open_id = kwargs["open_id"]
        # Other people's lists are visible to admins only.
        if open_id != context.user.open_id and context.user.role not in _ADMIN_ROLES:
            raise PermissionDenied(TASK_VIEW)
        owner = self._db.find_user_by_open_id(open_id)
        if owner is None:
            raise NotFound(f"User not found for open_id: {open_id}")
        return {
            "tasks": [
                {
                    "id": task.id,
                    "title": task.title,
                    "deadline": task.deadline.isoformat() if task.deadline else None,
                }
                for task in self._tasks.pending_tasks(owner)
            ]
        }


class CreateTaskTool(Tool):
    """Create a task for a registered user."""

    name = "create_task"
    description = (
        "Create a task and notify the assignee. target_open_id must come from the "
        "registered user directory; never invent one."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "target_open_id": {"type": "string"},
            "reporter_open_id": {"type": "string"},
            "deadline": {"type": "string", "description": "YYYY-MM-DD"},
            "note": {"type": "string"},
        },
        "required": ["title", "target_open_id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database, tasks: TaskService) -> None:
        self._db = db
        self._tasks = tasks

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        _require(context.user, TASK_CREATE)
        title = kwargs["title"].strip()
        if not title:
            raise ValueError("title must not be empty")
        target = self._db.find_user_by_open_id(kwargs["target_open_id"])
        if target is None:
            raise NotFound(f"User not found for open_id: {kwargs['target_open_id']}")

        task = self._tasks.create_task(
            title=title,
            assignee=target,
            deadline=parse_deadline(kwargs.get("deadline")),
            note=kwargs.get("note"),
            creator_id=context.user.task_identity,
            reporter_open_id=kwargs.get("reporter_open_id") or context.user.open_id,
        )
        return {"success": True, "task_id": task.id}


class CompleteTaskTool(Tool):
    """Complete one of the caller's pending tasks."""

    name = "complete_task"
    description = "Mark a pending task as completed. Only the assignee may complete it."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "task_id": {"type": "integer"},
            "user_open_id": {"type": "string"},
            "proof": {"type": "string", "description": "Optional proof URL"},
        },
        "required": ["task_id", "user_open_id"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database, tasks: TaskService) -> None:
        self._db = db
        self._tasks = tasks

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        _require(context.user, TASK_COMPLETE)
        task_id = kwargs["task_id"]
        user_open_id = kwargs["user_open_id"]
        if user_open_id != context.user.open_id:
            raise PermissionDenied(TASK_COMPLETE)

        task = self._db.get_task(task_id)
        if task is None or task.status != "pending":
            raise NotFound("任务不存在或已完成")
        if user_open_id not in (task.assignee_open_id, task.assignee_id) and (
            context.user.task_identity != task.assignee_id
        ):
            raise PermissionDenied(TASK_COMPLETE)

        completed = self._tasks.complete_task(
            task_id, kwargs.get("proof") or None, completer_name=context.user.display_name
        )
        if completed is None:
            raise NotFound("任务不存在或已完成")
        return {"success": True}


class SendMessageTool(Tool):
    """Send a text message to a chat."""

    name = "send_message"
    description = "Send a text message to a chat by chat_id."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "chat_id": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["chat_id", "content"],
        "additionalProperties": False,
    }

    def __init__(self, messenger: Messenger, timeout_seconds: float = 10.0) -> None:
        self._messenger = messenger
        self._timeout_seconds = timeout_seconds

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        await asyncio.wait_for(
            self._messenger.send_text(kwargs["chat_id"], kwargs["content"], id_type="chat_id"),
            timeout=self._timeout_seconds,
        )
        return {"success": True}


def parse_deadline(value: str | None) -> datetime | None:
    """Parse ``YYYY-MM-DD`` or an ISO timestamp. Naive values are taken as UTC."""

    if not value or value.lower() == "null":
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid deadline {value!r}; expected YYYY-MM-DD") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(user: User, feature: str) -> None:
    if not can(user, feature):
        raise PermissionDenied(feature)
