"""Static help menu, filtered by what the user is allowed to do."""

from __future__ import annotations

from taskbridge.models import User
from taskbridge.permissions import TASK_COMPLETE, TASK_CREATE, TASK_VIEW, resolve_features

_ROLE_LABELS = {"superadmin": "超级管理员", "admin": "管理员", "user": "用户"}

MENU_SECTIONS: list[tuple[str, list[tuple[str, str, str]]]] = [
    (
        "📋 催办任务",
        [
            (TASK_VIEW, "我的任务", "查看分配给你的待办任务"),
            (TASK_COMPLETE, "完成 [任务名/序号] [证明链接]", "标记任务为已完成"),
            (TASK_CREATE, "/add 任务名 邮箱/姓名 [YYYY-MM-DD]", "创建任务并分配给他人"),
        ],
    ),
    (
        "📊 历史记录",
        [("history", "历史记录", "查看最近的聊天和任务历史")],
    ),
    (
        "⚙️ 管理功能",
        [
            ("user_manage", "/users", "查看和管理所有用户"),
            ("feature_manage", "/grant @用户 功能名", "授予或撤销用户的功能权限"),
            ("system_config", "/config", "查看和修改系统配置"),
        ],
    ),
]


def build_menu(user: User, is_greeting: bool = False) -> str:
    features = resolve_features(user)
    role_label = _ROLE_LABELS.get(user.role, "用户")
    name = f"，{user.name}" if user.name else ""

    lines = [f"👋 你好{name}！（{role_label}）" if is_greeting else f"📱 功能菜单（{role_label}）"]
    lines.append("以下是你可以使用的功能，也可以直接用自然语言描述你的需求：")

    visible_any = False
    for title, items in MENU_SECTIONS:
        visible = [item for item in items if features.get(item[0])]
        if not visible:
            continue
        visible_any = True
        lines.append("")
        lines.append(title)
        for _, command, desc in visible:
            lines.append(f"  • {command}")
            lines.append(f"    {desc}")

    if not visible_any:
        lines.append("")
        lines.append("⚠️ 你目前没有任何可用功能，请联系管理员开通权限。")
        return "\n".join(lines)

    lines.append("")
    lines.append("💡 发送「菜单」随时查看此列表")
    return "\n".join(lines)
