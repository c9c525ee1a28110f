"""Keyword-based intent classification.

Rules are evaluated top to bottom and the first match wins. Order matters:
`/add` must beat the generic slash rule, and the short-message fallback must
come last or short commands such as "done" would be swallowed as chatter.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Callable


class Intent(str, Enum):
    CREATE = "create"
    COMMAND = "command"
    MENU = "menu"
    VIEW = "view"
    COMPLETE = "complete"
    GREETING = "greeting"
    UNKNOWN = "unknown"


CREATE_PATTERN = re.compile(r"^/add(\s|$)", re.IGNORECASE)

MENU_PATTERN = re.compile(
    r"^(菜单|帮助|功能|help|menu|我能做什么|能做什么|怎么用|使用说明|指令|命令|我能干嘛|有什么功能)",
    re.IGNORECASE,
)

VIEW_PHRASES = frozenset(
    {"我的任务", "任务列表", "我的待办", "待办任务", "查看任务", "my tasks", "tasks"}
)

COMPLETE_FORWARD_PATTERN = re.compile(r"^(完成|done)(\s[\s\S]*)?$", re.IGNORECASE)
COMPLETE_REVERSE_PATTERN = re.compile(
    r"^[\s\S]{1,100}?\s*(任务完成|完成了|已完成|done了)(\s+https?://\S+)?$", re.IGNORECASE
)

GREETING_PATTERN = re.compile(
    r"^(你好|您好|嗨|哈喽|hi|hello|hey|哟|喂|在吗|在不|在|早|早上好|下午好|晚上好|晚安|你好啊|哈哈|嘿|yo|sup|howdy)",
    re.IGNORECASE,
)

SHORT_MESSAGE_MAX_CHARS = 6


def _is_short_chatter(text: str) -> bool:
    return len(text) <= SHORT_MESSAGE_MAX_CHARS and "http" not in text.lower()


INTENT_RULES: list[tuple[Callable[[str], bool], Intent]] = [
    (lambda t: bool(CREATE_PATTERN.match(t)), Intent.CREATE),
    (lambda t: t.startswith("/"), Intent.COMMAND),
    (lambda t: bool(MENU_PATTERN.match(t)), Intent.MENU),
    (lambda t: t.lower() in VIEW_PHRASES, Intent.VIEW),
    (lambda t: bool(COMPLETE_FORWARD_PATTERN.match(t) or COMPLETE_REVERSE_PATTERN.match(t)), Intent.COMPLETE),
    (lambda t: bool(GREETING_PATTERN.match(t)), Intent.GREETING),
    (_is_short_chatter, Intent.GREETING),
]


def classify(text: str | None) -> Intent:
    """Map raw message text to an Intent. Total: never raises."""

    if not text:
        return Intent.UNKNOWN
    trimmed = text.strip()
    if not trimmed:
        return Intent.UNKNOWN
    for predicate, intent in INTENT_RULES:
        if predicate(trimmed):
            return intent
    return Intent.UNKNOWN
