"""Task mutations with best-effort notifications.

Every mutation commits first. Notifications are scheduled afterwards as
background tasks; a failed send is logged and never rolls the change back.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from taskbridge.assigner import WorkloadAssigner
from taskbridge.db import Database
from taskbridge.messenger.base import Messenger
from taskbridge.models import Task, User

LOGGER = logging.getLogger(__name__)

DEFAULT_DEADLINE_DAYS = 3
VALID_PRIORITIES = ("p0", "p1", "p2")

# China Standard Time, no DST.
_DISPLAY_TZ = timezone(timedelta(hours=8))


class TaskService:
    """Creates, completes and deletes tasks and notifies the people involved."""

    def __init__(
        self,
        db: Database,
        messenger: Messenger,
        assigner: WorkloadAssigner | None = None,
        default_deadline_days: int = DEFAULT_DEADLINE_DAYS,
        notify_timeout_seconds: float = 10.0,
    ) -> None:
        self._db = db
        self._messenger = messenger
        self._assigner = assigner or WorkloadAssigner(db)
        self._default_deadline_days = default_deadline_days
        self._notify_timeout_seconds = notify_timeout_seconds
        self._pending_notifications: set[asyncio.Task[None]] = set()

    def pending_tasks(self, user: User) -> list[Task]:
        return self._db.get_pending_tasks(user.task_identity, user.open_id)

    def create_task(
        self,
        title: str,
        assignee: User,
        deadline: datetime | None = None,
        note: str | None = None,
        creator_id: str | None = None,
        reporter_open_id: str | None = None,
        priority: str = "p1",
        estimated_hours: float | None = None,
        target_tag: str | None = None,
    ) -> Task:
        assignee_id = assignee.task_identity
        if not assignee_id:
            raise ValueError(f"User {assignee.user_id} has no contactable identity")
        if priority not in VALID_PRIORITIES:
            raise ValueError(f"Invalid priority {priority!r}; expected one of {', '.join(VALID_PRIORITIES)}")
        if deadline is None:
            deadline = datetime.now(timezone.utc) + timedelta(days=self._default_deadline_days)

        task = self._db.create_task(
            title=title,
            assignee_id=assignee_id,
            assignee_open_id=assignee.open_id,
            reporter_open_id=reporter_open_id,
            deadline=deadline,
            note=note,
            creator_id=creator_id,
            priority=priority,
            estimated_hours=estimated_hours,
            target_tag=target_tag,
        )
        LOGGER.info("Task created: id=%s assignee=%s", task.id, assignee_id)

        if assignee.open_id:
            text = (
                "📋 你收到一个新的催办任务：\n\n"
                f"「{title}」\n"
                f"📅 截止：{format_date(deadline)}\n\n"
                "发送「完成」标记任务已完成"
            )
            self._notify(assignee.open_id, text)
        return task

    def create_for_tag(self, tag: str, title: str, **kwargs: object) -> Task | None:
        """Create a task for the least-loaded user tagged `tag`. None if nobody qualifies."""

        assignee = self._assigner.pick(tag)
        if assignee is None:
            return None
        return self.create_task(title, assignee, target_tag=tag, **kwargs)  # type: ignore[arg-type]

    def complete_task(
        self,
        task_id: int,
        proof: str | None = None,
        completer_name: str | None = None,
    ) -> Task | None:
        """Complete a pending task. None means absent or already completed."""

        completed_at = datetime.now(timezone.utc)
        task = self._db.complete_task(task_id, proof, completed_at)
        if task is None:
            LOGGER.info("Complete skipped, task %s not pending", task_id)
            return None
        LOGGER.info("Task completed: id=%s proof=%s", task_id, bool(proof))

        if task.reporter_open_id:
            text = (
                "✅ 催办任务已完成！\n\n"
                f"📋 「{task.title}」\n"
                f"👤 完成人：{completer_name or '执行人'}\n"
                f"🕐 完成时间：{completed_at.astimezone(_DISPLAY_TZ):%m-%d %H:%M}"
            )
            if proof:
                text += f"\n📎 完成证明：{proof}"
            self._notify(task.reporter_open_id, text)
        return task

    async def drain(self) -> None:
        """Wait for outstanding notifications."""

        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    def _notify(self, open_id: str, text: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("No running event loop, notification to %s skipped", open_id)
            return
        task = loop.create_task(self._send(open_id, text))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _send(self, open_id: str, text: str) -> None:
        try:
            await asyncio.wait_for(
                self._messenger.send_text(open_id, text, id_type="open_id"),
                timeout=self._notify_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Notification to %s failed: %s", open_id, exc)


def format_date(value: datetime) -> str:
    return value.astimezone(_DISPLAY_TZ).strftime("%m月%d日")
