"""Structured task commands: view, complete and create.

Handlers return the reply text; the router delivers it. An ambiguous
`complete` opens a selection session instead of failing, and the next bare
number from the same user is consumed by `continue_selection`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from taskbridge.db import Database
from taskbridge.errors import PermissionDenied
from taskbridge.intents import Intent
from taskbridge.models import Candidate, InboundEvent, Task, User
from taskbridge.permissions import TASK_COMPLETE, TASK_CREATE, TASK_VIEW, can
from taskbridge.sessions import SessionStore, parse_selection
from taskbridge.tasks import TaskService, format_date

LOGGER = logging.getLogger(__name__)

ADD_USAGE = (
    "📝 创建任务格式：\n/add 任务名称 邮箱/姓名 [截止日期]\n\n"
    "示例：\n/add 提交周报 zhangsan@company.com 2026-03-01"
)

_FORBIDDEN_REPLIES = {
    TASK_VIEW: "🚫 你没有查看催办任务的权限，请联系管理员",
    TASK_COMPLETE: "🚫 你没有完成任务的权限，请联系管理员",
    TASK_CREATE: "🚫 你没有创建催办任务的权限，请联系管理员",
}

_URL_PATTERN = re.compile(r"https?://\S+")
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FORWARD_COMPLETE = re.compile(r"^(?:完成|done|/done|/complete)\s*([\s\S]*)$", re.IGNORECASE)
_REVERSE_COMPLETE = re.compile(
    r"^([\s\S]+?)\s*(?:任务完成|完成了|已完成|done了)(\s+https?://\S+)?$", re.IGNORECASE
)
_ADD_COMMAND = re.compile(r"^/add\s+([\s\S]+)$", re.IGNORECASE)

_NAME_SEARCH_LIMIT = 5


@dataclass(frozen=True, slots=True)
class CompleteArgument:
    selector: str
    proof: str


@dataclass(frozen=True, slots=True)
class AddArgument:
    title: str
    target: str
    deadline: str | None = None


def parse_complete_argument(text: str) -> CompleteArgument:
    """Split a complete command into an optional selector and an optional proof URL.

    Accepts ``完成|done [selector] [url]`` and ``<selector> 任务完成|完成了|已完成 [url]``.
    """

    trimmed = text.strip()
    arg = ""
    reverse = _REVERSE_COMPLETE.match(trimmed)
    if reverse:
        arg = reverse.group(1).strip()
        # "完成季度报告 已完成" carries the keyword on both ends.
        leading = _FORWARD_COMPLETE.match(arg)
        if leading:
            arg = leading.group(1).strip()
        if reverse.group(2):
            arg = f"{arg} {reverse.group(2).strip()}"
    else:
        forward = _FORWARD_COMPLETE.match(trimmed)
        if forward:
            arg = forward.group(1).strip()

    url = _URL_PATTERN.search(arg)
    proof = url.group(0) if url else ""
    selector = " ".join(_URL_PATTERN.sub(" ", arg).split())
    return CompleteArgument(selector=selector, proof=proof)


def parse_add_argument(text: str) -> AddArgument | None:
    """Parse ``/add <title words...> <identifier> [YYYY-MM-DD]``. None if malformed."""

    match = _ADD_COMMAND.match(text.strip())
    if not match:
        return None
    parts = match.group(1).split()
    if len(parts) < 2:
        return None
    if len(parts) >= 3 and _DATE_PATTERN.match(parts[-1]):
        return AddArgument(title=" ".join(parts[:-2]), target=parts[-2], deadline=parts[-1])
    return AddArgument(title=" ".join(parts[:-1]), target=parts[-1])


def resolve_task(tasks: list[Task], selector: str) -> tuple[Task | None, list[Task]]:
    """Resolve a selector against the pending list.

    Returns ``(task, [])`` on a unique hit, ``(None, candidates)`` when the
    user must choose. Order: 1-based index, exact title, prefix, substring,
    then the sole pending task.
    """

    if selector.isdigit():
        index = int(selector) - 1
        if 0 <= index < len(tasks):
            return tasks[index], []

    if selector:
        lowered = selector.lower()
        for matcher in (
            lambda title: title == lowered,
            lambda title: title.startswith(lowered),
            lambda title: lowered in title,
        ):
            hits = [t for t in tasks if matcher(t.title.lower())]
            if len(hits) == 1:
                return hits[0], []
            if len(hits) > 1:
                return None, hits

    if len(tasks) == 1:
        return tasks[0], []
    return None, tasks


class CommandHandler:
    """Executes task intents for one user."""

    def __init__(self, db: Database, tasks: TaskService, sessions: SessionStore) -> None:
        self._db = db
        self._tasks = tasks
        self._sessions = sessions

    async def handle(self, intent: Intent, user: User, event: InboundEvent) -> str | None:
        """Dispatch a task intent. Returns None for intents this handler does not own."""

        try:
            if intent is Intent.VIEW:
                return self.view(user)
            if intent is Intent.COMPLETE:
                return self.complete(user, event.text, event)
            if intent is Intent.CREATE:
                return self.create(user, event.text, event)
        except PermissionDenied as exc:
            LOGGER.info("Permission denied: user=%s feature=%s", user.user_id, exc.feature)
            return _FORBIDDEN_REPLIES[exc.feature]
        return None

    async def continue_selection(self, user: User, event: InboundEvent) -> str | None:
        """Consume a bare number when a selection session is live. None if not applicable."""

        number = parse_selection(event.text)
        if number is None:
            return None
        key = _session_key(user, event)
        session = self._sessions.get(key)
        if session is None:
            return None

        if not can(user, TASK_COMPLETE):
            return _FORBIDDEN_REPLIES[TASK_COMPLETE]

        result = self._sessions.select(session, number)
        if result.out_of_range:
            LOGGER.info("Selection out of range: key=%s n=%d size=%d", key, number, result.size)
            return f"❌ 请输入 1-{result.size} 之间的数字"
        LOGGER.info("Selection resolved: key=%s n=%d task=%s", key, number, result.candidate.id)
        return self._complete_and_reply(result.candidate.id, result.candidate.title, session.proof, user)

    # -- operations ----------------------------------------------------------

    def view(self, user: User) -> str:
        _require(user, TASK_VIEW)
        if not user.task_identity:
            return "⚠️ 无法识别你的用户 ID，请联系管理员"
        tasks = self._tasks.pending_tasks(user)
        if not tasks:
            return "🎉 你目前没有待办的催办任务！"

        lines = [f"📋 你的待办任务（{len(tasks)} 项）：", ""]
        for i, task in enumerate(tasks, start=1):
            deadline = format_date(task.deadline) if task.deadline else "无截止日期"
            lines.append(f"{i}. {task.title}")
            lines.append(f"   📅 {deadline}")
        lines.append("")
        lines.append("发送「完成 N」标记对应任务完成")
        return "\n".join(lines)

    def complete(self, user: User, text: str, event: InboundEvent) -> str:
        _require(user, TASK_COMPLETE)
        if not user.task_identity:
            return "⚠️ 无法识别你的用户 ID，请联系管理员"

        argument = parse_complete_argument(text)
        tasks = self._tasks.pending_tasks(user)
        if not tasks:
            return "✅ 你目前没有待办任务"

        task, candidates = resolve_task(tasks, argument.selector)
        if task is not None:
            return self._complete_and_reply(task.id, task.title, argument.proof, user)

        self._sessions.open(
            _session_key(user, event),
            [Candidate(id=t.id, title=t.title) for t in candidates],
            proof=argument.proof,
            chat_id=event.chat_id,
            message_id=event.message_id,
        )
        lines = [f"找到 {len(candidates)} 个待办任务，请回复编号选择：", ""]
        lines.extend(f"{i}. {t.title}" for i, t in enumerate(candidates, start=1))
        lines.append("")
        lines.append("（回复数字选择，如「1」）")
        return "\n".join(lines)

    def create(self, user: User, text: str, event: InboundEvent) -> str:
        _require(user, TASK_CREATE)

        argument = parse_add_argument(text)
        if argument is None:
            return ADD_USAGE
        if not argument.title:
            return "❌ 任务名称不能为空"

        deadline: datetime | None = None
        if argument.deadline:
            try:
                deadline = datetime.strptime(argument.deadline, "%Y-%m-%d").replace(tzinfo=timezone.utc)
            except ValueError:
                return f"❌ 无效的截止日期「{argument.deadline}」，请使用 YYYY-MM-DD"

        target_user, ambiguous = self._resolve_target(argument.target)
        if ambiguous:
            names = "\n".join(f"• {u.display_name}" for u in ambiguous)
            return f"⚠️ 找到多个名字相似的用户，请用邮箱指定：\n\n{names}"
        if target_user is None or not target_user.task_identity:
            return (
                f"❌ 找不到用户「{argument.target}」\n"
                "支持邮箱、用户 ID、姓名搜索。请先让对方发送一条消息完成注册。"
            )

        task = self._tasks.create_task(
            title=argument.title,
            assignee=target_user,
            deadline=deadline,
            creator_id=user.task_identity,
            reporter_open_id=user.open_id or event.sender_open_id,
        )
        if argument.deadline:
            deadline_label = argument.deadline
        else:
            deadline_label = f"默认 {format_date(task.deadline)}" if task.deadline else "无"
        return (
            "✅ 任务已创建！\n"
            f"📋 {task.title}\n"
            f"👤 → {target_user.display_name}\n"
            f"📅 截止：{deadline_label}"
        )

    # -- helpers -------------------------------------------------------------

    def _resolve_target(self, target: str) -> tuple[User | None, list[User]]:
        if "@" in target:
            found = self._db.find_user_by_email(target)
            if found:
                return found, []
        found = self._db.find_user_by_platform_id(target)
        if found:
            return found, []
        matches = self._db.search_users_by_name(target, _NAME_SEARCH_LIMIT)
        if len(matches) == 1:
            return matches[0], []
        if len(matches) > 1:
            return None, matches
        return None, []

    def _complete_and_reply(self, task_id: int, title: str, proof: str, user: User) -> str:
        completed = self._tasks.complete_task(task_id, proof or None, completer_name=user.display_name)
        if completed is None:
            return f"⚠️ 任务「{title}」不存在或已完成"
        reply = f"✅ 已完成任务「{completed.title}」！"
        if proof:
            reply += f"\n📎 证明：{proof}"
        return reply


def _require(user: User, feature: str) -> None:
    if not can(user, feature):
        raise PermissionDenied(feature)


def _session_key(user: User, event: InboundEvent) -> str:
    return user.open_id or event.sender_open_id
