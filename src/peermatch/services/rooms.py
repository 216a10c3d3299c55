from __future__ import annotations

import logging

from peermatch import store_keys as keys
from peermatch.errors import NotInRoomError
from peermatch.models import RoomInfo
from peermatch.redis_client import CoordinationStore
from peermatch.ws.notifier import EVENT_PARTNER_LEFT, EventPublisher

logger = logging.getLogger(__name__)

# leave_room return codes
_LEFT_PARTNER_STAYS = 1
_LEFT_ROOM_CLOSED = 2


class RoomService:
    """Room membership after promotion: leaving and session teardown."""

    def __init__(self, store: CoordinationStore, publisher: EventPublisher) -> None:
        self._store = store
        self._publisher = publisher

    async def leave_room(self, user_id: str) -> bool:
        """Remove the user from their room. Returns True if the room was closed."""
        match_id = await self._store.get(keys.user_room_key(user_id))
        if not match_id:
            raise NotInRoomError(user_id)

        data = await self._store.hgetall(keys.room_key(match_id))
        partner_id = RoomInfo.from_hash(data).partner_of(user_id) if data else None

        result = await self._store.leave_room(match_id, user_id, partner_id)
        if result == _LEFT_PARTNER_STAYS and partner_id:
            logger.info("User left room", extra={"match_id": match_id, "user_id": user_id})
            await self._publisher.send_to_user(
                partner_id, EVENT_PARTNER_LEFT, matchId=match_id, userId=user_id
            )
            return False
        if result == _LEFT_ROOM_CLOSED:
            logger.info("Room closed", extra={"match_id": match_id, "user_id": user_id})
            return True
        raise NotInRoomError(user_id)

    async def handle_session_ended(self, event: dict) -> None:
        """``session_ended`` from the collaboration service: drop the room."""
        match_id = event.get("matchId")
        user1 = event.get("user1")
        user2 = event.get("user2")
        if not match_id:
            logger.warning("session_ended without matchId", extra={"event": event})
            return
        if not (user1 and user2):
            data = await self._store.hgetall(keys.room_key(match_id))
            if not data:
                return
            room = RoomInfo.from_hash(data)
            user1, user2 = room.user1, room.user2

        removed = await self._store.close_room(match_id, user1, user2)
        logger.info(
            "Session ended, room removed",
            extra={"match_id": match_id, "memberships_removed": removed},
        )
