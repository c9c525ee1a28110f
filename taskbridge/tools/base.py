"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from taskbridge.models import User


@dataclass(frozen=True, slots=True)
class ToolContext:
    """Who is driving the agent and in which chat."""

    chat_id: str
    user: User


class Tool(ABC):
    """Base class for tools exposed to the model.

    `name` and the fields of `parameters_schema` are what the model is
    prompted with; keep them stable.
    """

    name: str
    description: str
    parameters_schema: dict[str, Any]

    @abstractmethod
    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        """Execute tool with validated arguments. Raise on failure."""
