"""Durable disambiguation sessions ("which of these tasks did you mean?").

A session lives in the database, not in process memory, so a restart in
the middle of a dialog does not lose it. Expiry is a query predicate; no
timers are involved.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from taskbridge.db import Database
from taskbridge.models import Candidate, Session

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
AWAIT_SELECTION = "await_selection"

_BARE_NUMBER = re.compile(r"^\d+$")


def parse_selection(text: str | None) -> int | None:
    """Return the integer in a bare-number message, otherwise None."""

    if not text:
        return None
    stripped = text.strip()
    if not _BARE_NUMBER.match(stripped):
        return None
    return int(stripped)


@dataclass(slots=True)
class SelectionResult:
    candidate: Candidate | None
    size: int
    session: Session

    @property
    def out_of_range(self) -> bool:
        return self.candidate is None


class SessionStore:
    """TTL-expiring key -> session store backed by `Database`."""

    def __init__(
        self,
        db: Database,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def open(
        self,
        key: str,
        candidates: Sequence[Candidate],
        proof: str = "",
        chat_id: str | None = None,
        message_id: str | None = None,
    ) -> Session:
        """Start (or overwrite) the selection dialog for `key`."""

        if not candidates:
            raise ValueError("A session needs at least one candidate")
        now = self._clock()
        frozen = tuple(candidates)
        data = {
            "state": AWAIT_SELECTION,
            "candidates": [{"id": c.id, "title": c.title} for c in frozen],
            "proof": proof,
            "chat_id": chat_id,
            "message_id": message_id,
        }
        expires_at = self._db.upsert_session(key, data, now + self._ttl)
        LOGGER.info("Session opened: key=%s candidates=%d", key, len(frozen))
        return Session(
            key=key,
            candidates=frozen,
            created_at=now,
            expires_at=expires_at,
            proof=proof,
            chat_id=chat_id,
            message_id=message_id,
        )

    def get(self, key: str) -> Session | None:
        row = self._db.get_session(key, self._clock())
        if row is None:
            return None
        data = row["data"]
        return Session(
            key=key,
            candidates=tuple(Candidate(id=int(c["id"]), title=str(c["title"])) for c in data.get("candidates", [])),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            proof=data.get("proof") or "",
            chat_id=data.get("chat_id"),
            message_id=data.get("message_id"),
            state=data.get("state", AWAIT_SELECTION),
        )

    def delete(self, key: str) -> None:
        self._db.delete_session(key)

    def cleanup(self) -> int:
        removed = self._db.delete_expired_sessions(self._clock())
        if removed:
            LOGGER.debug("Session cleanup removed %d rows", removed)
        return removed

    def select(self, session: Session, number: int) -> SelectionResult:
        """Resolve a 1-based choice against a live session.

        In range: the session is consumed. Out of range: the session is left
        untouched, expiry included.
        """

        size = len(session.candidates)
        if 1 <= number <= size:
            self.delete(session.key)
            return SelectionResult(candidate=session.candidates[number - 1], size=size, session=session)
        return SelectionResult(candidate=None, size=size, session=session)
