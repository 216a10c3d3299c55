from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from peermatch import store_keys as keys
from peermatch.redis_client import CoordinationStore
from peermatch.services.match_queue import MatchQueue

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    component: str
    healthy: bool
    latency_ms: float | None = None
    message: str | None = None


async def check_redis(store: CoordinationStore) -> HealthStatus:
    start = time.monotonic()
    try:
        await store.ping()
        return HealthStatus("redis", True, latency_ms=(time.monotonic() - start) * 1000)
    except Exception as e:
        return HealthStatus("redis", False, message=str(e))


async def check_match_queue(store: CoordinationStore, queue: MatchQueue) -> HealthStatus:
    """Report queue depth and how many handshakes are outstanding."""
    start = time.monotonic()
    try:
        waiting = await queue.size()
        pending = await store.zcard(keys.PENDING_EXPIRY_KEY)
        return HealthStatus(
            "match_queue",
            True,
            latency_ms=(time.monotonic() - start) * 1000,
            message=f"{waiting} waiting, {pending} pending",
        )
    except Exception as e:
        return HealthStatus("match_queue", False, message=str(e))


async def run_all_checks(store: CoordinationStore, queue: MatchQueue) -> list[HealthStatus]:
    results = [await check_redis(store), await check_match_queue(store, queue)]
    for status in results:
        if not status.healthy:
            logger.warning(
                "Health check failed",
                extra={"component": status.component, "error": status.message},
            )
    return results
