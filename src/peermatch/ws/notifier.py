"""Cross-instance event delivery.

Any instance may publish an event for any user.  Every instance listens on the
per-user channels, and only the one holding that user's WebSocket forwards it;
the others drop it.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from redis.exceptions import RedisError

from peermatch import store_keys as keys
from peermatch.monitoring.metrics import events_published_total
from peermatch.redis_client import CoordinationStore

logger = logging.getLogger(__name__)

EVENT_QUEUED = "queued"
EVENT_MATCH_FOUND = "match-found"
EVENT_MATCH_CANCELLED = "match-cancelled"
EVENT_MATCH_EXPIRED = "match-expired"
EVENT_ROOM_READY = "room-ready"
EVENT_PARTNER_LEFT = "partner-left"

RECONNECT_BACKOFF_INITIAL = 1
RECONNECT_BACKOFF_MAX = 30


class EventPublisher:
    def __init__(self, store: CoordinationStore) -> None:
        self._store = store

    async def send_to_user(self, user_id: str, event_type: str, **payload: Any) -> None:
        """Publish an event on the user's channel.

        Delivery is best effort: durable state already reflects the change and
        clients can always fall back to polling ``check``.
        """
        message = json.dumps({"type": event_type, **payload})
        try:
            await self._store.publish(keys.user_channel(user_id), message)
            events_published_total.labels(type=event_type).inc()
        except RedisError as e:
            logger.warning(
                "Failed to publish user event",
                extra={"user_id": user_id, "type": event_type, "error": str(e)},
            )

    async def broadcast(self, channel: str, data: dict) -> None:
        try:
            await self._store.publish(channel, json.dumps(data))
        except RedisError as e:
            logger.warning(
                "Failed to publish broadcast event",
                extra={"channel": channel, "error": str(e)},
            )


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionRegistry:
    """Live connections held by this instance only."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def register(self, user_id: str, connection: Connection) -> Connection | None:
        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        return previous

    def unregister(self, user_id: str, connection: Connection | None = None) -> bool:
        """Drop the user's connection; with ``connection`` given, only if it is still current."""
        current = self._connections.get(user_id)
        if current is None or (connection is not None and current is not connection):
            return False
        del self._connections[user_id]
        return True

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def deliver(self, user_id: str, message: dict) -> bool:
        """Forward to the user's local connection. Returns False if not held here."""
        connection = self._connections.get(user_id)
        if connection is None:
            return False
        try:
            await connection.send_json(message)
        except Exception as e:
            logger.warning(
                "Dropping connection after failed send",
                extra={"user_id": user_id, "error": str(e)},
            )
            self.unregister(user_id, connection)
            return False
        return True


class NotificationListener:
    """Subscribes to user event channels and ``session_ended``."""

    def __init__(
        self,
        store: CoordinationStore,
        registry: ConnectionRegistry,
        on_session_ended: Callable[[dict], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._on_session_ended = on_session_ended
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="notification-listener")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        backoff = RECONNECT_BACKOFF_INITIAL
        while True:
            try:
                async for channel, data in self._store.listen(
                    channels=[keys.SESSION_ENDED_CHANNEL],
                    patterns=[keys.USER_CHANNEL_PATTERN],
                ):
                    backoff = RECONNECT_BACKOFF_INITIAL
                    await self.dispatch(channel, data)
            except RedisError:
                logger.exception("Notification listener lost the store, reconnecting in %ds", backoff)
            else:
                logger.warning("Notification subscription ended, resubscribing in %ds", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, RECONNECT_BACKOFF_MAX)

    async def dispatch(self, channel: str, data: str) -> None:
        try:
            message = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed event", extra={"channel": channel})
            return

        if channel == keys.SESSION_ENDED_CHANNEL:
            if self._on_session_ended is not None:
                try:
                    await self._on_session_ended(message)
                except Exception:
                    logger.exception("session_ended handler failed", extra={"event": message})
            return

        user_id = keys.user_from_channel(channel)
        if user_id is None:
            return
        if await self._registry.deliver(user_id, message):
            logger.debug("Delivered event", extra={"user_id": user_id, "type": message.get("type")})
