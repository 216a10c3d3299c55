"""Redis key layout shared by every instance.

  mm:queue                 sorted set  score=enqueued_at  member=user_id
  mm:wait:{user}           hash        WaitEntry fields
  mm:pending:{match}       hash        PendingMatch fields
  mm:user_pending:{user}   string      match_id
  mm:pending_expiry        sorted set  score=expires_at   member=match_id
  mm:room:{match}          hash        RoomInfo fields
  mm:user_room:{user}      string      match_id
  mm:partners:{user}       set         recently paired user ids
  mm:elo:{user}            hash        elo_rating, sessions_completed, last_updated
"""
from __future__ import annotations

PREFIX = "mm"

QUEUE_KEY = f"{PREFIX}:queue"
PENDING_EXPIRY_KEY = f"{PREFIX}:pending_expiry"

# Pub/sub channels
USER_CHANNEL_PATTERN = f"{PREFIX}:user:*:events"
ELO_UPDATES_CHANNEL = "elo_updates"
MATCHES_CHANNEL = "matches"
SESSION_ENDED_CHANNEL = "session_ended"


def wait_key(user_id: str) -> str:
    return f"{PREFIX}:wait:{user_id}"


def pending_key(match_id: str) -> str:
    return f"{PREFIX}:pending:{match_id}"


def user_pending_key(user_id: str) -> str:
    return f"{PREFIX}:user_pending:{user_id}"


def room_key(match_id: str) -> str:
    return f"{PREFIX}:room:{match_id}"


def user_room_key(user_id: str) -> str:
    return f"{PREFIX}:user_room:{user_id}"


def partners_key(user_id: str) -> str:
    return f"{PREFIX}:partners:{user_id}"


def elo_key(user_id: str) -> str:
    return f"{PREFIX}:elo:{user_id}"


def user_channel(user_id: str) -> str:
    return f"{PREFIX}:user:{user_id}:events"


def user_from_channel(channel: str) -> str | None:
    """Extract the user id from ``mm:user:{user}:events``."""
    head = f"{PREFIX}:user:"
    tail = ":events"
    if not channel.startswith(head) or not channel.endswith(tail):
        return None
    user_id = channel[len(head):-len(tail)]
    return user_id or None
