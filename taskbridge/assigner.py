"""Workload-based auto-assignment within a tag group."""

from __future__ import annotations

import logging
import random

from taskbridge.db import Database
from taskbridge.models import User

LOGGER = logging.getLogger(__name__)


class WorkloadAssigner:
    """Picks the least-loaded contactable user carrying a tag.

    Ties are broken uniformly at random: the eligible list is shuffled first,
    then stable-sorted by score, so the comparator itself stays deterministic.
    """

    def __init__(self, db: Database, rng: random.Random | None = None) -> None:
        self._db = db
        self._rng = rng or random.Random()

    def pick(self, tag: str) -> User | None:
        eligible = [u for u in self._db.list_users_by_tag(tag) if u.open_id or u.platform_user_id]
        if not eligible:
            LOGGER.info("No contactable users tagged %r", tag)
            return None

        scored = [(self._db.get_workload(u.task_identity, u.open_id), u) for u in eligible]
        _fisher_yates(scored, self._rng)
        scored.sort(key=lambda pair: pair[0])

        score, chosen = scored[0]
        LOGGER.info("Auto-assign tag=%r -> %s (workload=%.2f, pool=%d)", tag, chosen.user_id, score, len(scored))
        return chosen


def _fisher_yates(items: list, rng: random.Random) -> None:
    for i in range(len(items) - 1, 0, -1):
        j = rng.randint(0, i)
        items[i], items[j] = items[j], items[i]
