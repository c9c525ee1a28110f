"""LLM client interface used by the tool-calling agent."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from taskbridge.models import LLMResponse


class LLMProvider(ABC):
    """Chat-completions style model with optional function calling."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Return text and/or tool calls for `messages`.

        Raises UpstreamError when the provider cannot be reached or rejects
        the request.
        """
