from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from peermatch.api.schemas.common import CamelModel
from peermatch.models import DIFFICULTY_MEDIUM, SessionMetrics, UserSessionMetrics


class UserSessionMetricsIn(CamelModel):
    voice_used: bool = False
    voice_duration: int = Field(0, ge=0)
    code_changes: int = Field(0, ge=0)
    messages_exchanged: int = Field(0, ge=0)

    def to_domain(self) -> UserSessionMetrics:
        return UserSessionMetrics(**self.model_dump())


class SessionMetricsRequest(CamelModel):
    session_id: str
    match_id: str
    user1_id: str = Field(min_length=1)
    user2_id: str = Field(min_length=1)
    difficulty: str = DIFFICULTY_MEDIUM
    session_duration: int
    user1_metrics: UserSessionMetricsIn = Field(default_factory=UserSessionMetricsIn)
    user2_metrics: UserSessionMetricsIn = Field(default_factory=UserSessionMetricsIn)

    @model_validator(mode="after")
    def _distinct_users(self) -> SessionMetricsRequest:
        if self.user1_id == self.user2_id:
            raise ValueError("user1Id and user2Id must differ")
        return self

    def to_domain(self) -> SessionMetrics:
        return SessionMetrics(
            session_id=self.session_id,
            match_id=self.match_id,
            user1_id=self.user1_id,
            user2_id=self.user2_id,
            difficulty=self.difficulty,
            session_duration=self.session_duration,
            user1_metrics=self.user1_metrics.to_domain(),
            user2_metrics=self.user2_metrics.to_domain(),
        )


class EloUpdateResponse(CamelModel):
    user_id: str
    old_rating: float
    new_rating: float
    change: float
    opponent_elo: float
    engagement: float
    timestamp: datetime


class UserEloResponse(CamelModel):
    user_id: str
    elo_rating: float
    sessions_completed: int
