"""Coordination store adapter over ``redis.asyncio``.

Every multi-key state transition (queue -> pending -> room and back) is a Lua
script so that racing instances see it as a single step.  Scripts take their
keys through KEYS and are therefore safe to run against any replica set that
shares one primary.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from typing import TypeVar

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from peermatch import store_keys as keys
from peermatch.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# KEYS[1]=wait  KEYS[2]=user_pending  KEYS[3]=user_room  KEYS[4]=queue
# ARGV[1]=user_id  ARGV[2]=category  ARGV[3]=difficulty  ARGV[4]=enqueued_at
# Returns "" on success, otherwise the state that blocked the join.
_ENQUEUE_IF_IDLE_LUA = """
if redis.call('EXISTS', KEYS[3]) == 1 then return 'in_room' end
if redis.call('EXISTS', KEYS[2]) == 1 then return 'pending' end
if redis.call('EXISTS', KEYS[1]) == 1 then return 'queued' end
redis.call('HSET', KEYS[1], 'category', ARGV[2], 'difficulty', ARGV[3], 'enqueued_at', ARGV[4])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
return ''
"""

# KEYS[1]=wait_a  KEYS[2]=wait_b  KEYS[3]=queue  KEYS[4]=pending
# KEYS[5]=user_pending_a  KEYS[6]=user_pending_b  KEYS[7]=pending_expiry
# ARGV[1]=user_a  ARGV[2]=enqueued_at_a  ARGV[3]=user_b  ARGV[4]=enqueued_at_b
# ARGV[5]=match_id  ARGV[6]=ttl  ARGV[7]=expires_at  ARGV[8..]=pending field/value pairs
_CLAIM_PAIR_LUA = """
local ea = redis.call('HGET', KEYS[1], 'enqueued_at')
local eb = redis.call('HGET', KEYS[2], 'enqueued_at')
if (not ea) or (not eb) or ea ~= ARGV[2] or eb ~= ARGV[4] then
    return 0
end
redis.call('DEL', KEYS[1], KEYS[2])
redis.call('ZREM', KEYS[3], ARGV[1], ARGV[3])
local fields = {}
for i = 8, #ARGV do
    fields[#fields + 1] = ARGV[i]
end
redis.call('HSET', KEYS[4], unpack(fields))
redis.call('EXPIRE', KEYS[4], ARGV[6])
redis.call('SET', KEYS[5], ARGV[5], 'EX', ARGV[6])
redis.call('SET', KEYS[6], ARGV[5], 'EX', ARGV[6])
redis.call('ZADD', KEYS[7], ARGV[7], ARGV[5])
return 1
"""

# KEYS[1]=pending  KEYS[2]=user_pending_1  KEYS[3]=user_pending_2  KEYS[4]=pending_expiry
# KEYS[5]=room  KEYS[6]=user_room_1  KEYS[7]=user_room_2  KEYS[8]=partners_1  KEYS[9]=partners_2
# ARGV[1]=user_id  ARGV[2]=now  ARGV[3]=room_ttl  ARGV[4]=room created_at
# ARGV[5]=room token1  ARGV[6]=room token2  ARGV[7]=partner_ttl
# Returns -1 not found / not a party, -2 expired, 1 recorded, 2 promoted to room.
_CONFIRM_HANDSHAKE_LUA = """
local p = redis.call('HMGET', KEYS[1], 'match_id', 'user1', 'user2', 'expires_at',
    'user1_confirmed', 'user2_confirmed', 'category', 'difficulty')
if not p[1] then return -1 end
local role
if ARGV[1] == p[2] then
    role = 'user1_confirmed'
elseif ARGV[1] == p[3] then
    role = 'user2_confirmed'
else
    return -1
end
if tonumber(ARGV[2]) > tonumber(p[4]) then return -2 end
redis.call('HSET', KEYS[1], role, '1')
local c1 = p[5]
local c2 = p[6]
if role == 'user1_confirmed' then c1 = '1' else c2 = '1' end
if c1 ~= '1' or c2 ~= '1' then return 1 end
redis.call('HSET', KEYS[5], 'match_id', p[1], 'user1', p[2], 'user2', p[3],
    'category', p[7], 'difficulty', p[8], 'status', 'ready',
    'token1', ARGV[5], 'token2', ARGV[6], 'created_at', ARGV[4])
redis.call('EXPIRE', KEYS[5], ARGV[3])
redis.call('SET', KEYS[6], p[1], 'EX', ARGV[3])
redis.call('SET', KEYS[7], p[1], 'EX', ARGV[3])
redis.call('SADD', KEYS[8], p[3])
redis.call('EXPIRE', KEYS[8], ARGV[7])
redis.call('SADD', KEYS[9], p[2])
redis.call('EXPIRE', KEYS[9], ARGV[7])
redis.call('DEL', KEYS[1], KEYS[2], KEYS[3])
redis.call('ZREM', KEYS[4], p[1])
return 2
"""

# KEYS[1]=pending  KEYS[2]=user_pending_1  KEYS[3]=user_pending_2  KEYS[4]=pending_expiry
# KEYS[5]=wait of the other party  KEYS[6]=queue
# ARGV[1]=rejecting user  ARGV[2]=now
# The other party goes back into the queue with their original entry.
_DISSOLVE_PENDING_LUA = """
local p = redis.call('HMGET', KEYS[1], 'match_id', 'user1', 'user2', 'expires_at',
    'user1_category', 'user1_difficulty', 'user1_enqueued_at',
    'user2_category', 'user2_difficulty', 'user2_enqueued_at')
if not p[1] then return -1 end
local other, cat, diff, enq
if ARGV[1] == p[2] then
    other = p[3]; cat = p[8]; diff = p[9]; enq = p[10]
elseif ARGV[1] == p[3] then
    other = p[2]; cat = p[5]; diff = p[6]; enq = p[7]
else
    return -1
end
if tonumber(ARGV[2]) > tonumber(p[4]) then return -2 end
redis.call('DEL', KEYS[1], KEYS[2], KEYS[3])
redis.call('ZREM', KEYS[4], p[1])
redis.call('HSET', KEYS[5], 'category', cat, 'difficulty', diff, 'enqueued_at', enq)
redis.call('ZADD', KEYS[6], enq, other)
return 1
"""

# KEYS[1]=pending  KEYS[2]=user_pending_1  KEYS[3]=user_pending_2  KEYS[4]=pending_expiry
# KEYS[5]=wait_1  KEYS[6]=wait_2  KEYS[7]=queue
# ARGV[1]=match_id  ARGV[2]=now
# Returns {status, user1_requeued, user2_requeued}; status -1 gone, 0 not due, 1 expired.
_EXPIRE_PENDING_LUA = """
local p = redis.call('HMGET', KEYS[1], 'user1', 'user2', 'expires_at',
    'user1_confirmed', 'user2_confirmed',
    'user1_category', 'user1_difficulty', 'user2_category', 'user2_difficulty')
if not p[1] then
    redis.call('ZREM', KEYS[4], ARGV[1])
    return {-1, 0, 0}
end
if tonumber(ARGV[2]) <= tonumber(p[3]) then return {0, 0, 0} end
if p[4] == '1' and p[5] == '1' then return {0, 0, 0} end
redis.call('DEL', KEYS[1], KEYS[2], KEYS[3])
redis.call('ZREM', KEYS[4], ARGV[1])
local r1 = 0
local r2 = 0
if p[4] == '1' then
    redis.call('HSET', KEYS[5], 'category', p[6], 'difficulty', p[7], 'enqueued_at', ARGV[2])
    redis.call('ZADD', KEYS[7], ARGV[2], p[1])
    r1 = 1
end
if p[5] == '1' then
    redis.call('HSET', KEYS[6], 'category', p[8], 'difficulty', p[9], 'enqueued_at', ARGV[2])
    redis.call('ZADD', KEYS[7], ARGV[2], p[2])
    r2 = 1
end
return {1, r1, r2}
"""

# KEYS[1]=user_room of the leaving user  KEYS[2]=room  KEYS[3]=user_room of the partner
# ARGV[1]=match_id
# Returns 0 not in that room, 1 left (partner still inside), 2 left and room closed.
_LEAVE_ROOM_LUA = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then return 0 end
redis.call('DEL', KEYS[1])
if redis.call('GET', KEYS[3]) == ARGV[1] then return 1 end
redis.call('DEL', KEYS[2])
return 2
"""

# KEYS[1]=room  KEYS[2]=user_room_1  KEYS[3]=user_room_2
# ARGV[1]=match_id
_CLOSE_ROOM_LUA = """
redis.call('DEL', KEYS[1])
local removed = 0
for i = 2, 3 do
    if redis.call('GET', KEYS[i]) == ARGV[1] then
        redis.call('DEL', KEYS[i])
        removed = removed + 1
    end
end
return removed
"""


class CoordinationStore:
    """Async Redis client shared by every component of one instance.

    Built once at startup and handed to each component constructor; nothing
    in the package holds a module-level connection.
    """

    def __init__(self, url: str | None = None, max_connections: int | None = None) -> None:
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._pool: aioredis.Redis | None = None

    async def initialize(self) -> None:
        self._pool = self._connect()

    def _connect(self) -> aioredis.Redis:
        return aioredis.from_url(
            self._url,
            decode_responses=True,
            max_connections=self._max_connections,
        )

    @property
    def client(self) -> aioredis.Redis:
        if self._pool is None:
            # from_url is synchronous, so lazy creation is safe here
            self._pool = self._connect()
        return self._pool

    async def close(self) -> None:
        if self._pool:
            await self._pool.aclose()
            self._pool = None

    # --- Plain key/value, hash and TTL helpers ---

    async def ping(self) -> bool:
        return await self.client.ping()

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.client.hgetall(key)

    async def hgetall_many(self, keys_: Sequence[str]) -> list[dict[str, str]]:
        """HGETALL for several keys in one round trip."""
        if not keys_:
            return []
        pipe = self.client.pipeline(transaction=False)
        for key in keys_:
            pipe.hgetall(key)
        return await pipe.execute()

    async def smembers_many(self, keys_: Sequence[str]) -> list[set[str]]:
        if not keys_:
            return []
        pipe = self.client.pipeline(transaction=False)
        for key in keys_:
            pipe.smembers(key)
        return await pipe.execute()

    # --- Sorted set helpers ---

    async def zrange_withscores(self, key: str) -> list[tuple[str, float]]:
        return await self.client.zrange(key, 0, -1, withscores=True)

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> list[str]:
        return await self.client.zrangebyscore(key, min_score, max_score)

    async def zcard(self, key: str) -> int:
        return await self.client.zcard(key)

    async def zrem(self, key: str, *members: str) -> int:
        return await self.client.zrem(key, *members)

    # --- Pub/sub ---

    async def publish(self, channel: str, message: str) -> int:
        return await self.client.publish(channel, message)

    async def listen(
        self,
        channels: Iterable[str] = (),
        patterns: Iterable[str] = (),
    ) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(channel, data)`` for every message on the subscriptions.

        Each call opens its own pub/sub connection, released when the
        iterator is closed or cancelled.
        """
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            channels = list(channels)
            patterns = list(patterns)
            if channels:
                await pubsub.subscribe(*channels)
            if patterns:
                await pubsub.psubscribe(*patterns)
            async for message in pubsub.listen():
                if message.get("type") not in ("message", "pmessage"):
                    continue
                yield message["channel"], message["data"]
        finally:
            await pubsub.aclose()

    # --- Atomic matchmaking transitions ---

    async def enqueue_if_idle(
        self, user_id: str, category: str, difficulty: str, enqueued_at: float
    ) -> str:
        """Create a WaitEntry unless the user is already busy.

        Returns "" on success, otherwise one of "queued", "pending", "in_room".
        """
        result = await self.client.eval(
            _ENQUEUE_IF_IDLE_LUA, 4,
            keys.wait_key(user_id), keys.user_pending_key(user_id),
            keys.user_room_key(user_id), keys.QUEUE_KEY,
            user_id, category, difficulty, repr(enqueued_at),
        )
        return result or ""

    async def remove_wait_entry(self, user_id: str) -> bool:
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(keys.wait_key(user_id))
        pipe.zrem(keys.QUEUE_KEY, user_id)
        deleted, _removed = await pipe.execute()
        return deleted > 0

    async def claim_pair(
        self,
        user_a: str,
        enqueued_at_a: float,
        user_b: str,
        enqueued_at_b: float,
        match_id: str,
        pending_fields: dict[str, str],
        expires_at: float,
        ttl_seconds: int,
    ) -> bool:
        """Atomically consume two WaitEntries and create the PendingMatch.

        Fails (returns False) if either entry is gone or was replaced since the
        caller's snapshot, which is how concurrent matchmaking ticks lose races.
        """
        flat: list[str] = []
        for field, value in pending_fields.items():
            flat.extend((field, value))
        result = await self.client.eval(
            _CLAIM_PAIR_LUA, 7,
            keys.wait_key(user_a), keys.wait_key(user_b), keys.QUEUE_KEY,
            keys.pending_key(match_id),
            keys.user_pending_key(user_a), keys.user_pending_key(user_b),
            keys.PENDING_EXPIRY_KEY,
            user_a, repr(enqueued_at_a), user_b, repr(enqueued_at_b),
            match_id, ttl_seconds, repr(expires_at), *flat,
        )
        return int(result) == 1

    async def confirm_handshake(
        self,
        match_id: str,
        user1: str,
        user2: str,
        user_id: str,
        now: float,
        room_created_at: str,
        room_token1: str,
        room_token2: str,
        room_ttl_seconds: int,
        partner_ttl_seconds: int,
    ) -> int:
        result = await self.client.eval(
            _CONFIRM_HANDSHAKE_LUA, 9,
            keys.pending_key(match_id),
            keys.user_pending_key(user1), keys.user_pending_key(user2),
            keys.PENDING_EXPIRY_KEY,
            keys.room_key(match_id),
            keys.user_room_key(user1), keys.user_room_key(user2),
            keys.partners_key(user1), keys.partners_key(user2),
            user_id, repr(now), room_ttl_seconds, room_created_at,
            room_token1, room_token2, partner_ttl_seconds,
        )
        return int(result)

    async def dissolve_pending(
        self, match_id: str, user1: str, user2: str, rejecting_user: str, now: float
    ) -> int:
        other = user2 if rejecting_user == user1 else user1
        result = await self.client.eval(
            _DISSOLVE_PENDING_LUA, 6,
            keys.pending_key(match_id),
            keys.user_pending_key(user1), keys.user_pending_key(user2),
            keys.PENDING_EXPIRY_KEY,
            keys.wait_key(other), keys.QUEUE_KEY,
            rejecting_user, repr(now),
        )
        return int(result)

    async def expire_pending(
        self, match_id: str, user1: str, user2: str, now: float
    ) -> tuple[int, bool, bool]:
        status, r1, r2 = await self.client.eval(
            _EXPIRE_PENDING_LUA, 7,
            keys.pending_key(match_id),
            keys.user_pending_key(user1), keys.user_pending_key(user2),
            keys.PENDING_EXPIRY_KEY,
            keys.wait_key(user1), keys.wait_key(user2), keys.QUEUE_KEY,
            match_id, repr(now),
        )
        return int(status), bool(r1), bool(r2)

    async def leave_room(self, match_id: str, user_id: str, partner_id: str | None) -> int:
        result = await self.client.eval(
            _LEAVE_ROOM_LUA, 3,
            keys.user_room_key(user_id), keys.room_key(match_id),
            keys.user_room_key(partner_id or ""),
            match_id,
        )
        return int(result)

    async def close_room(self, match_id: str, user1: str, user2: str) -> int:
        result = await self.client.eval(
            _CLOSE_ROOM_LUA, 3,
            keys.room_key(match_id), keys.user_room_key(user1), keys.user_room_key(user2),
            match_id,
        )
        return int(result)

    # --- Optimistic multi-hash update ---

    async def transact_hashes(
        self,
        keys_: Sequence[str],
        compute: Callable[[list[dict[str, str]]], tuple[list[dict[str, str]], T]],
        ttl_seconds: int,
        max_retries: int = 5,
    ) -> T:
        """Read several hashes under WATCH, then write them back in one MULTI.

        ``compute`` receives the current hashes and returns the new field
        mappings (same order) plus a result handed back to the caller.  Readers
        never observe a partial write; a concurrent writer forces a retry.
        """
        for attempt in range(1, max_retries + 1):
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(*keys_)
                    current = [await pipe.hgetall(key) for key in keys_]
                    writes, result = compute(current)
                    pipe.multi()
                    for key, mapping in zip(keys_, writes):
                        pipe.hset(key, mapping=mapping)
                        pipe.expire(key, ttl_seconds)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.info(
                        "Concurrent hash update, retrying",
                        extra={"keys": list(keys_), "attempt": attempt},
                    )
        raise WatchError(f"Gave up updating {list(keys_)} after {max_retries} attempts")
