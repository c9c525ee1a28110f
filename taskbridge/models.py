"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class InboundEvent:
    """Chat event normalized by the webhook for routing."""

    event_id: str
    chat_id: str
    message_id: str | None
    sender_open_id: str
    text: str
    timestamp: datetime
    sender_user_id: str | None = None
    chat_type: str = "p2p"


@dataclass(slots=True)
class User:
    """Registered chat user. Identities come from the chat platform."""

    user_id: str
    open_id: str | None = None
    platform_user_id: str | None = None
    name: str | None = None
    email: str | None = None
    role: str = "user"
    configs: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    @property
    def task_identity(self) -> str | None:
        # Tasks are keyed by the platform user id, falling back to open id.
        return self.platform_user_id or self.open_id

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.user_id


@dataclass(slots=True)
class Task:
    """Persisted task assigned to one user."""

    id: int
    title: str
    assignee_id: str
    status: str = "pending"
    assignee_open_id: str | None = None
    reporter_open_id: str | None = None
    deadline: datetime | None = None
    priority: str = "p1"
    reminder_interval_hours: int = 24
    estimated_hours: float | None = None
    last_reminded_at: datetime | None = None
    note: str | None = None
    proof: str | None = None
    creator_id: str | None = None
    target_tag: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class Candidate:
    """One selectable entry of a disambiguation list."""

    id: int
    title: str


@dataclass(slots=True)
class Session:
    """Pending disambiguation dialog for one user key."""

    key: str
    candidates: tuple[Candidate, ...]
    created_at: datetime
    expires_at: datetime
    proof: str = ""
    chat_id: str | None = None
    message_id: str | None = None
    state: str = "await_selection"


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None
    # Set when the provider returned arguments that are not a JSON object.
    parse_error: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class Round:
    """One request/execute cycle of the tool-calling loop."""

    index: int
    response: LLMResponse
    tool_results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def tool_calls(self) -> list[LLMToolCall]:
        return self.response.tool_calls

    @property
    def is_final(self) -> bool:
        return not self.response.tool_calls
