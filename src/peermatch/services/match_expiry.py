"""Expiration loop for pending matches whose handshake window closed."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable

from peermatch import store_keys as keys
from peermatch.monitoring.metrics import pending_expired_total
from peermatch.redis_client import CoordinationStore
from peermatch.ws.notifier import EVENT_MATCH_EXPIRED, EventPublisher

logger = logging.getLogger(__name__)

_EXPIRED = 1


class ExpirySweeper:
    def __init__(
        self,
        store: CoordinationStore,
        publisher: EventPublisher,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._clock = clock

    async def tick(self) -> int:
        """Expire every due pending match. Returns how many were expired."""
        now = self._clock()
        due = await self._store.zrangebyscore(keys.PENDING_EXPIRY_KEY, float("-inf"), now)
        expired = 0
        for match_id in due:
            data = await self._store.hgetall(keys.pending_key(match_id))
            if not data:
                # Record already promoted, dissolved or TTL'd out
                await self._store.zrem(keys.PENDING_EXPIRY_KEY, match_id)
                continue
            if await self.expire(match_id, data["user1"], data["user2"], now):
                expired += 1
        return expired

    async def expire(self, match_id: str, user1: str, user2: str, now: float) -> bool:
        """Atomically expire one match if it is still due and not fully confirmed.

        A confirmation that lands before this runs wins: the script re-reads
        the record and leaves it alone.
        """
        status, requeued1, requeued2 = await self._store.expire_pending(match_id, user1, user2, now)
        if status != _EXPIRED:
            return False

        pending_expired_total.inc()
        logger.info(
            "Pending match expired",
            extra={
                "match_id": match_id,
                "user1": user1,
                "user2": user2,
                "user1_requeued": requeued1,
                "user2_requeued": requeued2,
            },
        )
        for user_id, requeued in ((user1, requeued1), (user2, requeued2)):
            await self._publisher.send_to_user(
                user_id, EVENT_MATCH_EXPIRED, matchId=match_id, requeued=requeued
            )
        return True
