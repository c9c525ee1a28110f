"""Exception hierarchy shared by handlers and tools."""

from __future__ import annotations


class TaskBridgeError(Exception):
    """Base class for expected, user-facing failures."""


class PermissionDenied(TaskBridgeError):
    """Caller lacks the feature flag required for an operation."""

    def __init__(self, feature: str) -> None:
        super().__init__(f"Permission denied: {feature}")
        self.feature = feature


class NotFound(TaskBridgeError):
    """Referenced task or user does not exist (or is no longer pending)."""


class UpstreamError(TaskBridgeError):
    """Messenger, LLM or database call failed or timed out."""
