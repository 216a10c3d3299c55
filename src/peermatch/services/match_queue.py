"""Matchmaking queue backed by Redis.

Waiting users live in the sorted set ``mm:queue`` scored by join time, with
their preferences in ``mm:wait:{user}``.  The matchmaking loop scans a FIFO
snapshot and relaxes the allowed rating gap as a user's wait grows.
"""
from __future__ import annotations

import logging
import math
import random
import time
from collections.abc import Callable, Iterable, Mapping

from peermatch import store_keys as keys
from peermatch.config import settings
from peermatch.errors import AlreadyQueuedError
from peermatch.models import (
    ANY_CATEGORY,
    DIFFICULTY_EASY,
    DIFFICULTY_HARD,
    DIFFICULTY_MEDIUM,
    WaitEntry,
)
from peermatch.monitoring.metrics import queue_cancels_total, queue_joins_total
from peermatch.redis_client import CoordinationStore
from peermatch.services.elo import check_elo_compatibility
from peermatch.ws.notifier import EVENT_QUEUED, EventPublisher

logger = logging.getLogger(__name__)

_DIFFICULTY_ORDINALS = {
    DIFFICULTY_EASY: 1,
    DIFFICULTY_MEDIUM: 2,
    DIFFICULTY_HARD: 3,
}
_ORDINAL_DIFFICULTIES = {v: k for k, v in _DIFFICULTY_ORDINALS.items()}

OPEN_STAGE = 4


def difficulty_to_int(difficulty: str) -> int:
    return _DIFFICULTY_ORDINALS.get(difficulty, 2)


def int_to_difficulty(value: int) -> str:
    return _ORDINAL_DIFFICULTIES.get(value, DIFFICULTY_MEDIUM)


def average_difficulty(diff_a: str, diff_b: str) -> str:
    """Floor of the ordinal mean, so easy+medium -> easy and medium+hard -> medium."""
    avg = math.floor((difficulty_to_int(diff_a) + difficulty_to_int(diff_b)) / 2)
    return int_to_difficulty(avg)


def get_stage(wait_seconds: float, thresholds: tuple[int, int, int] | None = None) -> int:
    t1, t2, t3 = thresholds or (
        settings.stage1_wait_seconds,
        settings.stage2_wait_seconds,
        settings.stage3_wait_seconds,
    )
    if wait_seconds < t1:
        return 1
    if wait_seconds < t2:
        return 2
    if wait_seconds < t3:
        return 3
    return OPEN_STAGE


def categories_compatible(cat_a: str, cat_b: str, stage: int) -> bool:
    if cat_a == cat_b or ANY_CATEGORY in (cat_a, cat_b):
        return True
    # Past the last stage any two topics may be paired
    return stage >= OPEN_STAGE


def choose_category(cat_a: str, cat_b: str, rng: random.Random | None = None) -> str:
    if cat_a == cat_b:
        return cat_a
    if cat_a == ANY_CATEGORY:
        return cat_b
    if cat_b == ANY_CATEGORY:
        return cat_a
    return (rng or random).choice((cat_a, cat_b))


class MatchQueue:
    def __init__(
        self,
        store: CoordinationStore,
        publisher: EventPublisher,
        clock: Callable[[], float] = time.time,
        stage_thresholds: tuple[int, int, int] | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._clock = clock
        self._thresholds = stage_thresholds

    async def enqueue(self, user_id: str, category: str, difficulty: str) -> WaitEntry:
        """Add a user to the queue, or raise ``AlreadyQueuedError`` if busy."""
        entry = WaitEntry(user_id, category, difficulty, self._clock())
        blocked_by = await self._store.enqueue_if_idle(
            user_id, category, difficulty, entry.enqueued_at
        )
        if blocked_by:
            queue_joins_total.labels(result="conflict").inc()
            raise AlreadyQueuedError(user_id, blocked_by)

        queue_joins_total.labels(result="queued").inc()
        logger.info(
            "User enqueued",
            extra={"user_id": user_id, "category": category, "difficulty": difficulty},
        )
        await self._publisher.send_to_user(
            user_id, EVENT_QUEUED, category=category, difficulty=difficulty
        )
        return entry

    async def cancel(self, user_id: str) -> bool:
        """Remove the user's WaitEntry. Absent entries are not an error."""
        removed = await self._store.remove_wait_entry(user_id)
        queue_cancels_total.labels(result="removed" if removed else "noop").inc()
        if removed:
            logger.info("User left queue", extra={"user_id": user_id})
        return removed

    async def get_entry(self, user_id: str) -> WaitEntry | None:
        data = await self._store.hgetall(keys.wait_key(user_id))
        if not data:
            return None
        return WaitEntry.from_hash(user_id, data)

    async def size(self) -> int:
        return await self._store.zcard(keys.QUEUE_KEY)

    async def snapshot(self) -> list[WaitEntry]:
        """FIFO view of the queue at this instant."""
        members = await self._store.zrange_withscores(keys.QUEUE_KEY)
        if not members:
            return []
        user_ids = [member for member, _score in members]
        hashes = await self._store.hgetall_many([keys.wait_key(u) for u in user_ids])

        entries: list[WaitEntry] = []
        stale: list[str] = []
        for user_id, data in zip(user_ids, hashes):
            if not data:
                stale.append(user_id)
                continue
            entries.append(WaitEntry.from_hash(user_id, data))
        if stale:
            # Sorted-set members whose entry was already consumed elsewhere
            await self._store.zrem(keys.QUEUE_KEY, *stale)
        return entries

    def stage_for(self, entry: WaitEntry, now: float) -> int:
        return get_stage(now - entry.enqueued_at, self._thresholds)

    def find_compatible(
        self,
        candidate: WaitEntry,
        entries: Iterable[WaitEntry],
        ratings: Mapping[str, float],
        now: float,
        exclude: set[str] | frozenset[str] = frozenset(),
        avoid: set[str] | frozenset[str] = frozenset(),
    ) -> WaitEntry | None:
        """First entry (in FIFO order) that may be paired with ``candidate``.

        ``exclude`` holds users already taken this tick; ``avoid`` holds recent
        partners the caller would rather not repeat.
        """
        stage = self.stage_for(candidate, now)
        candidate_elo = ratings.get(candidate.user_id, settings.elo_default_rating)
        for other in entries:
            if other.user_id == candidate.user_id:
                continue
            if other.user_id in exclude or other.user_id in avoid:
                continue
            if not categories_compatible(candidate.category, other.category, stage):
                continue
            other_elo = ratings.get(other.user_id, settings.elo_default_rating)
            if not check_elo_compatibility(candidate_elo, other_elo, stage):
                continue
            return other
        return None
