from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Query

from peermatch.api.schemas.match import (
    CheckResponse,
    HandshakeRequest,
    JoinRequest,
    OkResponse,
    UserRequest,
)
from peermatch.api.schemas.rating import (
    EloUpdateResponse,
    SessionMetricsRequest,
    UserEloResponse,
)
from peermatch.dependencies import ServicesDep

router = APIRouter(prefix="/v1/match", tags=["match"])


@router.post("/join", response_model=OkResponse)
async def join_queue(body: JoinRequest, services: ServicesDep):
    """Enter the matchmaking queue. 409 if already queued, pending or in a room."""
    await services.queue.enqueue(body.user_id, body.category, body.difficulty)
    return OkResponse(info="queued")


@router.post("/cancel", response_model=OkResponse)
async def cancel_queue(body: UserRequest, services: ServicesDep):
    removed = await services.queue.cancel(body.user_id)
    return OkResponse(info="cancelled" if removed else "not_queued")


@router.get("/check", response_model=CheckResponse)
async def check_status(
    services: ServicesDep,
    user_id: str = Query(..., alias="userId", min_length=1),
):
    status = await services.coordinator.check(user_id)
    return CheckResponse.from_status(status)


@router.post("/handshake", response_model=OkResponse)
async def handshake(body: HandshakeRequest, services: ServicesDep):
    """Accept or reject a pending match. 404 unknown match, 410 window closed."""
    outcome = await services.coordinator.handshake(body.user_id, body.match_id, body.accept)
    return OkResponse(info=outcome)


@router.post("/done", response_model=OkResponse)
async def done(body: UserRequest, services: ServicesDep):
    closed = await services.rooms.leave_room(body.user_id)
    return OkResponse(info="room_closed" if closed else "left_room")


@router.post("/feedback", response_model=list[EloUpdateResponse])
async def session_feedback(body: SessionMetricsRequest, services: ServicesDep):
    """Apply a finished session's telemetry to both users' ratings."""
    updates = await services.ratings.process_session_metrics(body.to_domain())
    return [EloUpdateResponse(**asdict(u)) for u in updates]


@router.get("/rating/{user_id}", response_model=UserEloResponse)
async def get_rating(user_id: str, services: ServicesDep):
    info = await services.ratings.get_user_elo(user_id)
    return UserEloResponse(**asdict(info))
