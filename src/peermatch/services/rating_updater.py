"""Applies a finished session's telemetry to both participants' ratings."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable

from redis.exceptions import WatchError

from peermatch import store_keys as keys
from peermatch.config import settings
from peermatch.models import EloUpdate, SessionMetrics, UserEloInfo
from peermatch.monitoring.metrics import rating_updates_total
from peermatch.redis_client import CoordinationStore
from peermatch.services.elo import calculate_new_rating
from peermatch.services.engagement import calculate_adjusted_engagement
from peermatch.ws.notifier import EventPublisher

logger = logging.getLogger(__name__)


class RatingUpdater:
    def __init__(
        self,
        store: CoordinationStore,
        publisher: EventPublisher,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._clock = clock

    async def get_user_elo(self, user_id: str) -> UserEloInfo:
        data = await self._store.hgetall(keys.elo_key(user_id))
        return UserEloInfo.from_hash(user_id, data, settings.elo_default_rating)

    async def process_session_metrics(self, metrics: SessionMetrics) -> list[EloUpdate]:
        """Update both users' ratings in one transaction, then announce them.

        Each new rating is computed against the partner's pre-update rating.
        Both hashes are written together or not at all; ``elo_updates`` is
        only published once the write has committed.
        """
        now = self._clock()

        def compute(current: list[dict[str, str]]) -> tuple[list[dict[str, str]], list[EloUpdate]]:
            info1 = UserEloInfo.from_hash(metrics.user1_id, current[0], settings.elo_default_rating)
            info2 = UserEloInfo.from_hash(metrics.user2_id, current[1], settings.elo_default_rating)

            writes: list[dict[str, str]] = []
            updates: list[EloUpdate] = []
            for me, partner, usage in (
                (info1, info2, metrics.user1_metrics),
                (info2, info1, metrics.user2_metrics),
            ):
                engagement = calculate_adjusted_engagement(
                    usage, metrics.session_duration, metrics.difficulty
                )
                new_rating = calculate_new_rating(
                    me.elo_rating, partner.elo_rating, engagement, me.sessions_completed
                )
                updated = UserEloInfo(me.user_id, new_rating, me.sessions_completed + 1)
                writes.append(updated.to_hash(now))
                updates.append(
                    EloUpdate(
                        user_id=me.user_id,
                        old_rating=me.elo_rating,
                        new_rating=new_rating,
                        change=new_rating - me.elo_rating,
                        opponent_elo=partner.elo_rating,
                        engagement=engagement,
                    )
                )
            return writes, updates

        try:
            updates = await self._store.transact_hashes(
                [keys.elo_key(metrics.user1_id), keys.elo_key(metrics.user2_id)],
                compute,
                ttl_seconds=settings.elo_ttl_seconds,
                max_retries=settings.elo_update_max_retries,
            )
        except WatchError:
            rating_updates_total.labels(status="conflict").inc()
            logger.error(
                "Rating update abandoned after repeated conflicts",
                extra={"session_id": metrics.session_id, "match_id": metrics.match_id},
            )
            raise

        rating_updates_total.labels(status="ok").inc()
        for update in updates:
            logger.info(
                "Rating updated",
                extra={
                    "session_id": metrics.session_id,
                    "user_id": update.user_id,
                    "old_rating": update.old_rating,
                    "new_rating": update.new_rating,
                    "engagement": update.engagement,
                },
            )
            await self._publisher.broadcast(keys.ELO_UPDATES_CHANNEL, update.to_event())
        return updates
