from __future__ import annotations

from typing import Any

import pytest

from taskbridge.db import Database
from taskbridge.messenger.base import Messenger
from taskbridge.models import User


class FakeMessenger(Messenger):
    """Records every send instead of talking to Feishu."""

    def __init__(self, identities: dict[str, dict[str, Any]] | None = None, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.identities = identities or {}
        self.fail = fail

    async def send_text(self, receive_id, text, id_type="open_id", reply_to=None):  # noqa: ANN001, ANN201
        if self.fail:
            raise RuntimeError("send failed")
        self.sent.append({"receive_id": receive_id, "text": text, "id_type": id_type, "reply_to": reply_to})

    async def get_user_identity(self, open_id):  # noqa: ANN001, ANN201
        return self.identities.get(open_id)

    def texts_to(self, receive_id: str) -> list[str]:
        return [m["text"] for m in self.sent if m["receive_id"] == receive_id]


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "taskbridge.db")
    database.initialize()
    return database


@pytest.fixture
def messenger():
    return FakeMessenger()


def make_user(db: Database, user_id: str, **kwargs: Any) -> User:
    kwargs.setdefault("open_id", f"ou_{user_id}")
    kwargs.setdefault("platform_user_id", f"uid_{user_id}")
    kwargs.setdefault("name", user_id)
    return db.upsert_user(User(user_id=user_id, **kwargs))
