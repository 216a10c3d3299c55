"""API tests for /api/v1/match and the internal endpoints."""
from __future__ import annotations

from redis.exceptions import ConnectionError as RedisConnectionError

from peermatch import store_keys as keys

BASE = "/api/v1/match"


async def _pair(client, services, store) -> str:
    await client.post(f"{BASE}/join", json={"userId": "alice", "category": "dp", "difficulty": "easy"})
    await client.post(f"{BASE}/join", json={"userId": "bob", "category": "dp", "difficulty": "hard"})
    await services.matchmaker.tick()
    return store.strings[keys.user_pending_key("alice")]


class TestJoinCancel:
    async def test_join(self, client, store):
        resp = await client.post(f"{BASE}/join", json={"userId": "alice", "category": "dp"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "info": "queued"}
        assert store.user_state("alice") == {"queued"}

    async def test_double_join_conflict(self, client):
        await client.post(f"{BASE}/join", json={"userId": "alice"})
        resp = await client.post(f"{BASE}/join", json={"userId": "alice"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "conflict"

    async def test_missing_user_id(self, client):
        resp = await client.post(f"{BASE}/join", json={"category": "dp"})
        assert resp.status_code == 422

    async def test_cancel(self, client, store):
        await client.post(f"{BASE}/join", json={"userId": "alice"})
        resp = await client.post(f"{BASE}/cancel", json={"userId": "alice"})
        assert resp.status_code == 200
        assert resp.json()["info"] == "cancelled"
        assert store.user_state("alice") == set()

    async def test_cancel_when_absent(self, client):
        resp = await client.post(f"{BASE}/cancel", json={"userId": "nobody"})
        assert resp.status_code == 200
        assert resp.json()["info"] == "not_queued"

    async def test_check_takes_camel_case_query(self, client):
        await client.post(f"{BASE}/join", json={"userId": "alice", "category": "dp"})
        resp = await client.get(f"{BASE}/check", params={"userId": "alice"})
        assert resp.json()["status"] == "queued"
        assert resp.json()["inRoom"] is False

        resp = await client.get(f"{BASE}/check", params={"user_id": "alice"})
        assert resp.status_code == 422

    async def test_join_accepts_snake_case_body(self, client, store):
        resp = await client.post(f"{BASE}/join", json={"user_id": "alice"})
        assert resp.status_code == 200
        assert store.user_state("alice") == {"queued"}


class TestHandshakeFlow:
    async def test_full_flow_to_room(self, client, services, store):
        match_id = await _pair(client, services, store)

        resp = await client.get(f"{BASE}/check", params={"userId": "alice"})
        assert resp.json()["status"] == "pending"
        assert resp.json()["matchId"] == match_id
        assert resp.json()["roomId"] is None

        resp = await client.post(
            f"{BASE}/handshake", json={"userId": "alice", "matchId": match_id, "accept": True}
        )
        assert resp.json()["info"] == "waiting"
        resp = await client.post(
            f"{BASE}/handshake", json={"userId": "bob", "matchId": match_id, "accept": True}
        )
        assert resp.json()["info"] == "room_ready"

        resp = await client.get(f"{BASE}/check", params={"userId": "bob"})
        body = resp.json()
        assert body["status"] == "in_room"
        assert body["inRoom"] is True
        assert body["roomId"] == match_id
        assert body["category"] == "dp"
        assert body["difficulty"] == "medium"
        assert body["token"]

    async def test_handshake_unknown_match(self, client):
        resp = await client.post(
            f"{BASE}/handshake", json={"userId": "alice", "matchId": "nope", "accept": True}
        )
        assert resp.status_code == 404

    async def test_handshake_expired(self, client, services, store, clock):
        match_id = await _pair(client, services, store)
        clock.advance(60)
        resp = await client.post(
            f"{BASE}/handshake", json={"userId": "bob", "matchId": match_id, "accept": True}
        )
        assert resp.status_code == 410
        assert resp.json()["error"] == "expired"

    async def test_reject(self, client, services, store):
        match_id = await _pair(client, services, store)
        resp = await client.post(
            f"{BASE}/handshake", json={"userId": "bob", "matchId": match_id, "accept": False}
        )
        assert resp.json()["info"] == "rejected"
        check = await client.get(f"{BASE}/check", params={"userId": "alice"})
        assert check.json()["status"] == "queued"

    async def test_done(self, client, services, store):
        match_id = await _pair(client, services, store)
        for user in ("alice", "bob"):
            await client.post(
                f"{BASE}/handshake", json={"userId": user, "matchId": match_id, "accept": True}
            )

        resp = await client.post(f"{BASE}/done", json={"userId": "alice"})
        assert resp.json()["info"] == "left_room"
        resp = await client.post(f"{BASE}/done", json={"userId": "bob"})
        assert resp.json()["info"] == "room_closed"
        resp = await client.post(f"{BASE}/done", json={"userId": "bob"})
        assert resp.status_code == 404


class TestRatings:
    async def test_feedback_from_telemetry_producer(self, client):
        resp = await client.post(
            f"{BASE}/feedback",
            json={
                "sessionId": "s1",
                "matchId": "m1",
                "user1Id": "alice",
                "user2Id": "bob",
                "difficulty": "hard",
                "sessionDuration": 900,
                "user1Metrics": {
                    "voiceUsed": True,
                    "voiceDuration": 420,
                    "codeChanges": 25,
                    "messagesExchanged": 12,
                },
                "user2Metrics": {"voiceUsed": False},
            },
        )
        assert resp.status_code == 200
        alice, bob = resp.json()
        assert alice["userId"] == "alice"
        assert alice["engagement"] == 100.0
        assert alice["opponentElo"] == 1500.0
        assert alice["newRating"] > 1500.0
        assert bob["newRating"] < 1500.0

        resp = await client.get(f"{BASE}/rating/alice")
        assert resp.json()["eloRating"] == alice["newRating"]
        assert resp.json()["sessionsCompleted"] == 1

    async def test_feedback_accepts_snake_case(self, client):
        resp = await client.post(
            f"{BASE}/feedback",
            json={
                "session_id": "s1", "match_id": "m1", "user1_id": "alice",
                "user2_id": "bob", "session_duration": 900,
                "user1_metrics": {"code_changes": 25},
            },
        )
        assert resp.status_code == 200
        assert resp.json()[0]["engagement"] == 55.0

    async def test_feedback_same_user_rejected(self, client):
        resp = await client.post(
            f"{BASE}/feedback",
            json={
                "sessionId": "s1", "matchId": "m1", "user1Id": "alice",
                "user2Id": "alice", "sessionDuration": 900,
            },
        )
        assert resp.status_code == 422

    async def test_default_rating(self, client):
        resp = await client.get(f"{BASE}/rating/newcomer")
        assert resp.json() == {"userId": "newcomer", "eloRating": 1500.0, "sessionsCompleted": 0}


class TestInternal:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert {c["component"] for c in body["components"]} == {"redis", "match_queue"}

    async def test_health_reports_queue_and_connections(self, client, services):
        await client.post(f"{BASE}/join", json={"userId": "alice"})
        services.registry.register("alice", object())
        body = (await client.get("/health")).json()
        assert body["connections"] == 1
        queue = next(c for c in body["components"] if c["component"] == "match_queue")
        assert queue["message"] == "1 waiting, 0 pending"

    async def test_health_degraded(self, client, store):
        store.healthy = False
        resp = await client.get("/health")
        assert resp.json()["status"] == "degraded"

    async def test_metrics(self, client):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "peermatch_queue_joins_total" in resp.text

    async def test_store_outage_maps_to_503(self, client, store):
        async def down(*args, **kwargs):
            raise RedisConnectionError("down")

        store.enqueue_if_idle = down
        resp = await client.post(f"{BASE}/join", json={"userId": "alice"})
        assert resp.status_code == 503
        assert resp.json()["error"] == "store_unavailable"
