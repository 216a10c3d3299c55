from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Queue metrics
queue_joins_total = Counter("peermatch_queue_joins_total", "Join attempts", ["result"])
queue_cancels_total = Counter("peermatch_queue_cancels_total", "Cancel requests", ["result"])
queue_depth = Gauge("peermatch_queue_depth", "Users waiting at the last matchmaking tick")

# Matchmaking metrics
pairs_formed_total = Counter("peermatch_pairs_formed_total", "Pending matches created", ["stage"])
pair_claims_lost_total = Counter(
    "peermatch_pair_claims_lost_total", "Pair claims lost to another instance or a cancel"
)
handshakes_total = Counter("peermatch_handshakes_total", "Handshake responses", ["result"])
pending_expired_total = Counter("peermatch_pending_expired_total", "Pending matches expired")
rooms_opened_total = Counter("peermatch_rooms_opened_total", "Rooms promoted from pending matches")
wait_seconds = Histogram(
    "peermatch_wait_seconds", "Queue wait before a pending match formed",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600],
)

# Loop metrics
loop_ticks_total = Counter("peermatch_loop_ticks_total", "Periodic loop ticks", ["loop", "status"])

# Rating metrics
rating_updates_total = Counter("peermatch_rating_updates_total", "Session rating updates", ["status"])

# Realtime metrics
ws_connections = Gauge("peermatch_ws_connections", "Active match WebSocket connections")
events_published_total = Counter("peermatch_events_published_total", "Events published", ["type"])
