from __future__ import annotations

import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError

from peermatch.api.schemas.match import CheckResponse
from peermatch.dependencies import ServicesDep
from peermatch.monitoring.metrics import ws_connections

logger = logging.getLogger(__name__)

match_ws_router = APIRouter()


@match_ws_router.websocket("/match")
async def match_events(
    websocket: WebSocket,
    services: ServicesDep,
    user_id: str = Query(..., alias="userId", min_length=1),
) -> None:
    """Push channel for a user's matchmaking events.

    Losing the connection counts as leaving the queue and rejecting any open
    handshake, unless a newer connection for the same user has taken over.
    """
    await websocket.accept()
    previous = services.registry.register(user_id, websocket)
    if previous is not None:
        logger.info("Replacing existing match connection", extra={"user_id": user_id})
    ws_connections.inc()

    try:
        status = await services.coordinator.check(user_id)
        snapshot = CheckResponse.from_status(status).model_dump(mode="json", by_alias=True)
        await websocket.send_json({"type": "status", **snapshot})
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Match WebSocket error", extra={"user_id": user_id})
    finally:
        ws_connections.dec()
        if services.registry.unregister(user_id, websocket):
            try:
                await services.coordinator.abandon(user_id)
            except RedisError:
                logger.warning("Could not abandon after disconnect", extra={"user_id": user_id})
