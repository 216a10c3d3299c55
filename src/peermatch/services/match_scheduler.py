"""Matchmaking loop: pairs queued users and opens pending matches.

Every instance runs the same tick.  Pair formation goes through the atomic
``claim_pair`` script, so when two instances pick the same users only one
claim succeeds and the other simply moves on.
"""
from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable, Sequence

from peermatch import store_keys as keys
from peermatch.config import settings
from peermatch.models import PendingMatch, WaitEntry
from peermatch.monitoring.metrics import (
    pair_claims_lost_total,
    pairs_formed_total,
    queue_depth,
    wait_seconds,
)
from peermatch.redis_client import CoordinationStore
from peermatch.services.match_queue import (
    MatchQueue,
    average_difficulty,
    choose_category,
)
from peermatch.services.room_tokens import RoomTokenIssuer
from peermatch.ws.notifier import EVENT_MATCH_FOUND, EventPublisher

logger = logging.getLogger(__name__)


class Matchmaker:
    def __init__(
        self,
        store: CoordinationStore,
        queue: MatchQueue,
        publisher: EventPublisher,
        tokens: RoomTokenIssuer,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        handshake_ttl_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._publisher = publisher
        self._tokens = tokens
        self._clock = clock
        self._rng = rng or random.Random()
        self._handshake_ttl = handshake_ttl_seconds or settings.handshake_ttl_seconds

    async def tick(self) -> int:
        """Run one pairing pass over the queue. Returns pending matches formed."""
        entries = await self._queue.snapshot()
        queue_depth.set(len(entries))
        if len(entries) < 2:
            return 0

        ratings, partners = await self._load_context(entries)
        now = self._clock()
        taken: set[str] = set()
        formed = 0

        for index, candidate in enumerate(entries):
            if candidate.user_id in taken:
                continue
            rest = entries[index + 1:]
            recent = partners.get(candidate.user_id, set())

            # Prefer someone new; repeat a recent partner only as a fallback
            other = self._queue.find_compatible(
                candidate, rest, ratings, now, exclude=taken, avoid=recent
            )
            if other is None and recent:
                other = self._queue.find_compatible(candidate, rest, ratings, now, exclude=taken)
            if other is None:
                continue

            taken.update((candidate.user_id, other.user_id))
            stage = self._queue.stage_for(candidate, now)
            if await self._open_pending(candidate, other, now, stage):
                formed += 1

        if formed:
            logger.info("Matchmaking tick formed pairs", extra={"pairs": formed, "waiting": len(entries)})
        return formed

    async def _load_context(
        self, entries: Sequence[WaitEntry]
    ) -> tuple[dict[str, float], dict[str, set[str]]]:
        user_ids = [e.user_id for e in entries]
        elo_hashes = await self._store.hgetall_many([keys.elo_key(u) for u in user_ids])
        partner_sets = await self._store.smembers_many([keys.partners_key(u) for u in user_ids])

        default = settings.elo_default_rating
        ratings: dict[str, float] = {}
        for user_id, data in zip(user_ids, elo_hashes):
            ratings[user_id] = float(data.get("elo_rating", default)) if data else default
        partners = {user_id: set(members) for user_id, members in zip(user_ids, partner_sets)}
        return ratings, partners

    async def _open_pending(self, first: WaitEntry, second: WaitEntry, now: float, stage: int) -> bool:
        match_id = str(uuid.uuid4())
        pending = PendingMatch(
            match_id=match_id,
            user1=first.user_id,
            user2=second.user_id,
            category=choose_category(first.category, second.category, self._rng),
            difficulty=average_difficulty(first.difficulty, second.difficulty),
            user1_category=first.category,
            user1_difficulty=first.difficulty,
            user1_enqueued_at=first.enqueued_at,
            user2_category=second.category,
            user2_difficulty=second.difficulty,
            user2_enqueued_at=second.enqueued_at,
            token1=self._tokens.issue(match_id, first.user_id, self._handshake_ttl, now=now),
            token2=self._tokens.issue(match_id, second.user_id, self._handshake_ttl, now=now),
            created_at=now,
            expires_at=now + self._handshake_ttl,
        )

        claimed = await self._store.claim_pair(
            first.user_id, first.enqueued_at,
            second.user_id, second.enqueued_at,
            match_id, pending.to_hash(), pending.expires_at,
            self._handshake_ttl + settings.handshake_grace_seconds,
        )
        if not claimed:
            pair_claims_lost_total.inc()
            logger.debug(
                "Pair claim lost",
                extra={"user1": first.user_id, "user2": second.user_id},
            )
            return False

        pairs_formed_total.labels(stage=str(stage)).inc()
        wait_seconds.observe(now - first.enqueued_at)
        wait_seconds.observe(now - second.enqueued_at)
        logger.info(
            "Pending match created",
            extra={
                "match_id": match_id,
                "user1": first.user_id,
                "user2": second.user_id,
                "category": pending.category,
                "difficulty": pending.difficulty,
                "stage": stage,
            },
        )

        for user_id in (pending.user1, pending.user2):
            await self._publisher.send_to_user(
                user_id,
                EVENT_MATCH_FOUND,
                matchId=match_id,
                partnerId=pending.other(user_id),
                category=pending.category,
                difficulty=pending.difficulty,
                expiresIn=self._handshake_ttl,
                token=pending.token_for(user_id),
            )
        return True
