"""Chat platform messaging interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Messenger(ABC):
    """Sends text and resolves user identity on the chat platform."""

    @abstractmethod
    async def send_text(
        self,
        receive_id: str,
        text: str,
        id_type: str = "open_id",
        reply_to: str | None = None,
    ) -> None:
        """Deliver `text` to a user (`open_id`) or chat (`chat_id`)."""

    @abstractmethod
    async def get_user_identity(self, open_id: str) -> dict[str, Any] | None:
        """Return ``{"name", "email", "user_id"}`` for a platform user, or None."""
