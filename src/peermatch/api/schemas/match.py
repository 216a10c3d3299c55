from __future__ import annotations

from dataclasses import asdict

from pydantic import Field

from peermatch.api.schemas.common import CamelModel
from peermatch.models import ANY_CATEGORY, DIFFICULTY_MEDIUM
from peermatch.services.pending_match import MatchStatus


class JoinRequest(CamelModel):
    user_id: str = Field(min_length=1)
    category: str = ANY_CATEGORY
    difficulty: str = DIFFICULTY_MEDIUM


class UserRequest(CamelModel):
    user_id: str = Field(min_length=1)


class HandshakeRequest(CamelModel):
    user_id: str = Field(min_length=1)
    match_id: str = Field(min_length=1)
    accept: bool


class OkResponse(CamelModel):
    ok: bool = True
    info: str | None = None


class CheckResponse(CamelModel):
    """Polling fallback for the push channel."""
    status: str
    in_room: bool = False
    room_id: str | None = None
    match_id: str | None = None
    partner_id: str | None = None
    category: str | None = None
    difficulty: str | None = None
    token: str | None = None
    expires_in: float | None = None
    confirmed: bool | None = None
    waited: float | None = None

    @classmethod
    def from_status(cls, status: MatchStatus) -> CheckResponse:
        room_id = status.match_id if status.in_room else None
        return cls(in_room=status.in_room, room_id=room_id, **asdict(status))
