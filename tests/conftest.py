"""Shared test fixtures.

Redis is replaced by ``FakeStore``, an in-memory stand-in exposing the same
methods as ``CoordinationStore``.  The Lua-backed transitions are reimplemented
in plain Python with identical return codes; the scripts themselves run in
``test_redis_client.py`` against fakeredis.
"""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from peermatch import store_keys as keys
from peermatch.dependencies import build_services
from peermatch.services.room_tokens import RoomTokenIssuer

TEST_SECRET = "test-room-secret-0123456789abcdef0123456789"
START_TIME = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.incoming: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        self.healthy = True

    # --- lifecycle ---

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        if not self.healthy:
            raise RedisConnectionError("store down")
        return True

    # --- plain helpers ---

    async def get(self, key):
        return self.strings.get(key)

    def _del(self, key) -> int:
        found = 0
        for space in (self.strings, self.hashes, self.sets, self.zsets):
            if key in space:
                del space[key]
                found = 1
        self.ttls.pop(key, None)
        return found

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hgetall_many(self, keys_):
        return [dict(self.hashes.get(k, {})) for k in keys_]

    async def smembers_many(self, keys_):
        return [set(self.sets.get(k, set())) for k in keys_]

    # --- sorted sets ---

    def _zadd(self, key, member, score):
        self.zsets.setdefault(key, {})[member] = float(score)

    def _zrem(self, key, *members) -> int:
        zset = self.zsets.get(key, {})
        removed = sum(1 for m in members if zset.pop(m, None) is not None)
        if key in self.zsets and not zset:
            del self.zsets[key]
        return removed

    async def zrange_withscores(self, key):
        return sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))

    async def zrangebyscore(self, key, min_score, max_score):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))
        return [m for m, s in items if min_score <= s <= max_score]

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zrem(self, key, *members):
        return self._zrem(key, *members)

    # --- pub/sub ---

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def listen(self, channels=(), patterns=()):
        while True:
            yield await self.incoming.get()

    # --- atomic transitions ---

    async def enqueue_if_idle(self, user_id, category, difficulty, enqueued_at):
        if keys.user_room_key(user_id) in self.strings:
            return "in_room"
        if keys.user_pending_key(user_id) in self.strings:
            return "pending"
        if keys.wait_key(user_id) in self.hashes:
            return "queued"
        self._requeue(user_id, category, difficulty, repr(enqueued_at))
        return ""

    def _requeue(self, user_id, category, difficulty, enqueued_at: str):
        self.hashes[keys.wait_key(user_id)] = {
            "category": category,
            "difficulty": difficulty,
            "enqueued_at": enqueued_at,
        }
        self._zadd(keys.QUEUE_KEY, user_id, enqueued_at)

    async def remove_wait_entry(self, user_id):
        deleted = self._del(keys.wait_key(user_id))
        self._zrem(keys.QUEUE_KEY, user_id)
        return deleted > 0

    async def claim_pair(
        self, user_a, enqueued_at_a, user_b, enqueued_at_b,
        match_id, pending_fields, expires_at, ttl_seconds,
    ):
        wait_a = self.hashes.get(keys.wait_key(user_a))
        wait_b = self.hashes.get(keys.wait_key(user_b))
        if not wait_a or not wait_b:
            return False
        if wait_a["enqueued_at"] != repr(enqueued_at_a) or wait_b["enqueued_at"] != repr(enqueued_at_b):
            return False
        self._del(keys.wait_key(user_a))
        self._del(keys.wait_key(user_b))
        self._zrem(keys.QUEUE_KEY, user_a, user_b)
        self.hashes[keys.pending_key(match_id)] = dict(pending_fields)
        self.ttls[keys.pending_key(match_id)] = ttl_seconds
        self.strings[keys.user_pending_key(user_a)] = match_id
        self.strings[keys.user_pending_key(user_b)] = match_id
        self._zadd(keys.PENDING_EXPIRY_KEY, match_id, expires_at)
        return True

    def _drop_pending(self, match_id, user1, user2):
        self._del(keys.pending_key(match_id))
        self._del(keys.user_pending_key(user1))
        self._del(keys.user_pending_key(user2))
        self._zrem(keys.PENDING_EXPIRY_KEY, match_id)

    async def confirm_handshake(
        self, match_id, user1, user2, user_id, now,
        room_created_at, room_token1, room_token2, room_ttl_seconds, partner_ttl_seconds,
    ):
        p = self.hashes.get(keys.pending_key(match_id))
        if not p:
            return -1
        if user_id == p["user1"]:
            role = "user1_confirmed"
        elif user_id == p["user2"]:
            role = "user2_confirmed"
        else:
            return -1
        if now > float(p["expires_at"]):
            return -2
        p[role] = "1"
        if p.get("user1_confirmed") != "1" or p.get("user2_confirmed") != "1":
            return 1
        self.hashes[keys.room_key(match_id)] = {
            "match_id": p["match_id"],
            "user1": p["user1"],
            "user2": p["user2"],
            "category": p["category"],
            "difficulty": p["difficulty"],
            "status": "ready",
            "token1": room_token1,
            "token2": room_token2,
            "created_at": room_created_at,
        }
        self.ttls[keys.room_key(match_id)] = room_ttl_seconds
        self.strings[keys.user_room_key(p["user1"])] = match_id
        self.strings[keys.user_room_key(p["user2"])] = match_id
        self.sets.setdefault(keys.partners_key(p["user1"]), set()).add(p["user2"])
        self.sets.setdefault(keys.partners_key(p["user2"]), set()).add(p["user1"])
        self._drop_pending(match_id, user1, user2)
        return 2

    async def dissolve_pending(self, match_id, user1, user2, rejecting_user, now):
        p = self.hashes.get(keys.pending_key(match_id))
        if not p:
            return -1
        if rejecting_user == p["user1"]:
            other, prefix = p["user2"], "user2_"
        elif rejecting_user == p["user2"]:
            other, prefix = p["user1"], "user1_"
        else:
            return -1
        if now > float(p["expires_at"]):
            return -2
        self._drop_pending(match_id, user1, user2)
        self._requeue(
            other, p[prefix + "category"], p[prefix + "difficulty"], p[prefix + "enqueued_at"]
        )
        return 1

    async def expire_pending(self, match_id, user1, user2, now):
        p = self.hashes.get(keys.pending_key(match_id))
        if not p:
            self._zrem(keys.PENDING_EXPIRY_KEY, match_id)
            return -1, False, False
        if now <= float(p["expires_at"]):
            return 0, False, False
        c1 = p.get("user1_confirmed") == "1"
        c2 = p.get("user2_confirmed") == "1"
        if c1 and c2:
            return 0, False, False
        self._drop_pending(match_id, user1, user2)
        if c1:
            self._requeue(p["user1"], p["user1_category"], p["user1_difficulty"], repr(now))
        if c2:
            self._requeue(p["user2"], p["user2_category"], p["user2_difficulty"], repr(now))
        return 1, c1, c2

    async def leave_room(self, match_id, user_id, partner_id):
        if self.strings.get(keys.user_room_key(user_id)) != match_id:
            return 0
        self._del(keys.user_room_key(user_id))
        if self.strings.get(keys.user_room_key(partner_id or "")) == match_id:
            return 1
        self._del(keys.room_key(match_id))
        return 2

    async def close_room(self, match_id, user1, user2):
        self._del(keys.room_key(match_id))
        removed = 0
        for user_id in (user1, user2):
            if self.strings.get(keys.user_room_key(user_id)) == match_id:
                self._del(keys.user_room_key(user_id))
                removed += 1
        return removed

    async def transact_hashes(self, keys_, compute, ttl_seconds, max_retries=5):
        current = [dict(self.hashes.get(k, {})) for k in keys_]
        writes, result = compute(current)
        for key, mapping in zip(keys_, writes):
            self.hashes.setdefault(key, {}).update(mapping)
            self.ttls[key] = ttl_seconds
        return result

    # --- test helpers ---

    def events_for(self, user_id: str) -> list[dict]:
        channel = keys.user_channel(user_id)
        return [json.loads(m) for c, m in self.published if c == channel]

    def event_types_for(self, user_id: str) -> list[str]:
        return [e["type"] for e in self.events_for(user_id)]

    def messages_on(self, channel: str) -> list[dict]:
        return [json.loads(m) for c, m in self.published if c == channel]

    def set_rating(self, user_id: str, rating: float, sessions: int = 0) -> None:
        self.hashes[keys.elo_key(user_id)] = {
            "elo_rating": repr(float(rating)),
            "sessions_completed": str(sessions),
        }

    def user_state(self, user_id: str) -> set[str]:
        """Which of wait / pending / room currently reference the user."""
        state = set()
        if keys.wait_key(user_id) in self.hashes:
            state.add("queued")
        if keys.user_pending_key(user_id) in self.strings:
            state.add("pending")
        if keys.user_room_key(user_id) in self.strings:
            state.add("in_room")
        return state


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tokens() -> RoomTokenIssuer:
    return RoomTokenIssuer(secret=TEST_SECRET, algorithm="HS256")


@pytest.fixture
def services(store, clock, tokens):
    return build_services(store, clock=clock, tokens=tokens)


# ---------------------------------------------------------------------------
# FastAPI app + httpx client
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _noop_lifespan(app):
    yield


@pytest.fixture
async def app(services):
    """FastAPI app wired to the in-memory store, with no lifespan."""
    from peermatch.main import create_app

    application = create_app()
    application.router.lifespan_context = _noop_lifespan
    application.state.services = services
    yield application


@pytest.fixture
async def client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
