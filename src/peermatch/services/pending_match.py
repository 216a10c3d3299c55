"""Handshake handling for pending matches and the polling view of a user."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from peermatch import store_keys as keys
from peermatch.config import settings
from peermatch.errors import MatchExpiredError, MatchNotFoundError
from peermatch.models import ROOM_STATUS_READY, PendingMatch, RoomInfo
from peermatch.monitoring.metrics import handshakes_total, rooms_opened_total
from peermatch.redis_client import CoordinationStore
from peermatch.services.match_expiry import ExpirySweeper
from peermatch.services.match_queue import MatchQueue
from peermatch.services.room_tokens import RoomTokenIssuer
from peermatch.ws.notifier import EVENT_MATCH_CANCELLED, EVENT_ROOM_READY, EventPublisher

logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_QUEUED = "queued"
STATUS_PENDING = "pending"
STATUS_IN_ROOM = "in_room"

HANDSHAKE_REJECTED = "rejected"
HANDSHAKE_WAITING = "waiting"
HANDSHAKE_ROOM_READY = "room_ready"

# confirm_handshake / dissolve_pending return codes
_NOT_FOUND = -1
_EXPIRED = -2
_PROMOTED = 2


@dataclass
class MatchStatus:
    """What ``check`` reports: the same facts the last pushed event carried."""

    status: str
    match_id: str | None = None
    partner_id: str | None = None
    category: str | None = None
    difficulty: str | None = None
    token: str | None = None
    expires_in: float | None = None
    confirmed: bool | None = None
    waited: float | None = None

    @property
    def in_room(self) -> bool:
        return self.status == STATUS_IN_ROOM


class PendingMatchCoordinator:
    def __init__(
        self,
        store: CoordinationStore,
        queue: MatchQueue,
        publisher: EventPublisher,
        tokens: RoomTokenIssuer,
        sweeper: ExpirySweeper,
        clock: Callable[[], float] = time.time,
        room_ttl_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._publisher = publisher
        self._tokens = tokens
        self._sweeper = sweeper
        self._clock = clock
        self._room_ttl = room_ttl_seconds or settings.room_ttl_seconds

    async def get_pending(self, match_id: str) -> PendingMatch | None:
        data = await self._store.hgetall(keys.pending_key(match_id))
        if not data:
            return None
        return PendingMatch.from_hash(data)

    async def get_room(self, match_id: str) -> RoomInfo | None:
        data = await self._store.hgetall(keys.room_key(match_id))
        if not data:
            return None
        return RoomInfo.from_hash(data)

    async def handshake(self, user_id: str, match_id: str, accept: bool) -> str:
        """Accept or reject a pending match on behalf of ``user_id``.

        Returns ``rejected``, ``waiting`` (partner has not answered yet) or
        ``room_ready``.  Raises ``MatchNotFoundError`` when the match is gone
        or the user is not part of it, ``MatchExpiredError`` when the
        handshake window has closed.
        """
        pending = await self.get_pending(match_id)
        if pending is None or not pending.is_party(user_id):
            handshakes_total.labels(result="not_found").inc()
            raise MatchNotFoundError(match_id, user_id)

        now = self._clock()
        if not accept:
            return await self._reject(pending, user_id, now)
        return await self._accept(pending, user_id, now)

    async def _reject(self, pending: PendingMatch, user_id: str, now: float) -> str:
        result = await self._store.dissolve_pending(
            pending.match_id, pending.user1, pending.user2, user_id, now
        )
        await self._raise_for_failure(result, pending, user_id, now)

        other = pending.other(user_id)
        handshakes_total.labels(result="rejected").inc()
        logger.info(
            "Pending match rejected",
            extra={"match_id": pending.match_id, "user_id": user_id, "requeued": other},
        )
        await self._publisher.send_to_user(
            other, EVENT_MATCH_CANCELLED, matchId=pending.match_id, requeued=True
        )
        return HANDSHAKE_REJECTED

    async def _accept(self, pending: PendingMatch, user_id: str, now: float) -> str:
        room = RoomInfo(
            match_id=pending.match_id,
            user1=pending.user1,
            user2=pending.user2,
            category=pending.category,
            difficulty=pending.difficulty,
            status=ROOM_STATUS_READY,
            token1=self._tokens.issue(pending.match_id, pending.user1, self._room_ttl, now=now),
            token2=self._tokens.issue(pending.match_id, pending.user2, self._room_ttl, now=now),
            created_at=datetime.fromtimestamp(now, UTC).isoformat(),
        )
        result = await self._store.confirm_handshake(
            pending.match_id, pending.user1, pending.user2, user_id, now,
            room.created_at, room.token1, room.token2,
            self._room_ttl, settings.recent_partner_ttl_seconds,
        )
        await self._raise_for_failure(result, pending, user_id, now)

        handshakes_total.labels(result="accepted").inc()
        if result != _PROMOTED:
            logger.info(
                "Handshake recorded",
                extra={"match_id": pending.match_id, "user_id": user_id},
            )
            return HANDSHAKE_WAITING

        rooms_opened_total.inc()
        logger.info(
            "Room ready",
            extra={"match_id": room.match_id, "user1": room.user1, "user2": room.user2},
        )
        for member in (room.user1, room.user2):
            await self._publisher.send_to_user(
                member,
                EVENT_ROOM_READY,
                matchId=room.match_id,
                partnerId=room.partner_of(member),
                category=room.category,
                difficulty=room.difficulty,
                token=room.token_for(member),
            )
        await self._publisher.broadcast(
            keys.MATCHES_CHANNEL, {"event": "match_created", **room.to_event()}
        )
        return HANDSHAKE_ROOM_READY

    async def _raise_for_failure(
        self, result: int, pending: PendingMatch, user_id: str, now: float
    ) -> None:
        if result == _NOT_FOUND:
            handshakes_total.labels(result="not_found").inc()
            raise MatchNotFoundError(pending.match_id, user_id)
        if result == _EXPIRED:
            handshakes_total.labels(result="expired").inc()
            # Evict now rather than waiting for the next sweep
            await self._sweeper.expire(pending.match_id, pending.user1, pending.user2, now)
            raise MatchExpiredError(pending.match_id)

    async def check(self, user_id: str) -> MatchStatus:
        now = self._clock()

        room_id = await self._store.get(keys.user_room_key(user_id))
        if room_id:
            room = await self.get_room(room_id)
            if room is not None:
                return MatchStatus(
                    status=STATUS_IN_ROOM,
                    match_id=room.match_id,
                    partner_id=room.partner_of(user_id),
                    category=room.category,
                    difficulty=room.difficulty,
                    token=room.token_for(user_id),
                )

        match_id = await self._store.get(keys.user_pending_key(user_id))
        if match_id:
            pending = await self.get_pending(match_id)
            if pending is not None and pending.is_party(user_id):
                return MatchStatus(
                    status=STATUS_PENDING,
                    match_id=pending.match_id,
                    partner_id=pending.other(user_id),
                    category=pending.category,
                    difficulty=pending.difficulty,
                    token=pending.token_for(user_id),
                    expires_in=max(0.0, pending.expires_at - now),
                    confirmed=pending.is_confirmed(user_id),
                )

        entry = await self._queue.get_entry(user_id)
        if entry is not None:
            return MatchStatus(
                status=STATUS_QUEUED,
                category=entry.category,
                difficulty=entry.difficulty,
                waited=max(0.0, now - entry.enqueued_at),
            )
        return MatchStatus(status=STATUS_IDLE)

    async def abandon(self, user_id: str) -> None:
        """Treat a lost connection as a cancel plus a reject of any open handshake."""
        await self._queue.cancel(user_id)

        match_id = await self._store.get(keys.user_pending_key(user_id))
        if not match_id:
            return
        try:
            await self.handshake(user_id, match_id, accept=False)
        except (MatchNotFoundError, MatchExpiredError) as e:
            # Already resolved by the partner or the sweeper
            logger.debug("Nothing to abandon", extra={"user_id": user_id, "reason": str(e)})
