"""Domain records held in the coordination store.

Redis hashes only carry strings, so every record knows how to flatten itself
into a field mapping (``to_hash``) and rebuild itself from one (``from_hash``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

DIFFICULTY_EASY = "easy"
DIFFICULTY_MEDIUM = "medium"
DIFFICULTY_HARD = "hard"

ANY_CATEGORY = "any"

ROOM_STATUS_READY = "ready"


def _flag(value: str | None) -> bool:
    return value == "1"


@dataclass
class WaitEntry:
    user_id: str
    category: str
    difficulty: str
    enqueued_at: float

    def to_hash(self) -> dict[str, str]:
        return {
            "category": self.category,
            "difficulty": self.difficulty,
            "enqueued_at": repr(self.enqueued_at),
        }

    @classmethod
    def from_hash(cls, user_id: str, data: dict[str, str]) -> WaitEntry:
        return cls(
            user_id=user_id,
            category=data.get("category", ANY_CATEGORY),
            difficulty=data.get("difficulty", DIFFICULTY_MEDIUM),
            enqueued_at=float(data.get("enqueued_at", 0.0)),
        )


@dataclass
class PendingMatch:
    match_id: str
    user1: str
    user2: str
    category: str
    difficulty: str
    user1_category: str
    user1_difficulty: str
    user1_enqueued_at: float
    user2_category: str
    user2_difficulty: str
    user2_enqueued_at: float
    token1: str
    token2: str
    created_at: float
    expires_at: float
    user1_confirmed: bool = False
    user2_confirmed: bool = False

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.user1, self.user2)

    def other(self, user_id: str) -> str:
        return self.user2 if user_id == self.user1 else self.user1

    def token_for(self, user_id: str) -> str:
        return self.token1 if user_id == self.user1 else self.token2

    def is_confirmed(self, user_id: str) -> bool:
        return self.user1_confirmed if user_id == self.user1 else self.user2_confirmed

    def to_hash(self) -> dict[str, str]:
        return {
            "match_id": self.match_id,
            "user1": self.user1,
            "user2": self.user2,
            "category": self.category,
            "difficulty": self.difficulty,
            "user1_category": self.user1_category,
            "user1_difficulty": self.user1_difficulty,
            "user1_enqueued_at": repr(self.user1_enqueued_at),
            "user2_category": self.user2_category,
            "user2_difficulty": self.user2_difficulty,
            "user2_enqueued_at": repr(self.user2_enqueued_at),
            "token1": self.token1,
            "token2": self.token2,
            "created_at": repr(self.created_at),
            "expires_at": repr(self.expires_at),
            "user1_confirmed": "1" if self.user1_confirmed else "0",
            "user2_confirmed": "1" if self.user2_confirmed else "0",
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> PendingMatch:
        return cls(
            match_id=data["match_id"],
            user1=data["user1"],
            user2=data["user2"],
            category=data["category"],
            difficulty=data["difficulty"],
            user1_category=data["user1_category"],
            user1_difficulty=data["user1_difficulty"],
            user1_enqueued_at=float(data["user1_enqueued_at"]),
            user2_category=data["user2_category"],
            user2_difficulty=data["user2_difficulty"],
            user2_enqueued_at=float(data["user2_enqueued_at"]),
            token1=data["token1"],
            token2=data["token2"],
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            user1_confirmed=_flag(data.get("user1_confirmed")),
            user2_confirmed=_flag(data.get("user2_confirmed")),
        )


@dataclass
class RoomInfo:
    match_id: str
    user1: str
    user2: str
    category: str
    difficulty: str
    status: str
    token1: str
    token2: str
    created_at: str

    def token_for(self, user_id: str) -> str:
        return self.token1 if user_id == self.user1 else self.token2

    def partner_of(self, user_id: str) -> str:
        return self.user2 if user_id == self.user1 else self.user1

    def to_hash(self) -> dict[str, str]:
        return {
            "match_id": self.match_id,
            "user1": self.user1,
            "user2": self.user2,
            "category": self.category,
            "difficulty": self.difficulty,
            "status": self.status,
            "token1": self.token1,
            "token2": self.token2,
            "created_at": self.created_at,
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> RoomInfo:
        return cls(**{k: data.get(k, "") for k in (
            "match_id", "user1", "user2", "category", "difficulty",
            "status", "token1", "token2", "created_at",
        )})

    def to_event(self) -> dict:
        return {
            "matchId": self.match_id,
            "user1": self.user1,
            "user2": self.user2,
            "category": self.category,
            "difficulty": self.difficulty,
            "status": self.status,
            "createdAt": self.created_at,
        }


@dataclass
class UserEloInfo:
    user_id: str
    elo_rating: float
    sessions_completed: int = 0

    @classmethod
    def from_hash(cls, user_id: str, data: dict[str, str], default_rating: float) -> UserEloInfo:
        if not data:
            return cls(user_id=user_id, elo_rating=default_rating, sessions_completed=0)
        return cls(
            user_id=user_id,
            elo_rating=float(data.get("elo_rating", default_rating)),
            sessions_completed=int(data.get("sessions_completed", 0)),
        )

    def to_hash(self, updated_at: float) -> dict[str, str]:
        return {
            "elo_rating": repr(self.elo_rating),
            "sessions_completed": str(self.sessions_completed),
            "last_updated": str(int(updated_at)),
        }


@dataclass
class UserSessionMetrics:
    voice_used: bool = False
    voice_duration: int = 0  # seconds
    code_changes: int = 0
    messages_exchanged: int = 0


@dataclass
class SessionMetrics:
    session_id: str
    match_id: str
    user1_id: str
    user2_id: str
    difficulty: str
    session_duration: int  # seconds
    user1_metrics: UserSessionMetrics = field(default_factory=UserSessionMetrics)
    user2_metrics: UserSessionMetrics = field(default_factory=UserSessionMetrics)


@dataclass(frozen=True)
class EloUpdate:
    user_id: str
    old_rating: float
    new_rating: float
    change: float
    opponent_elo: float
    engagement: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_event(self) -> dict:
        return {
            "userId": self.user_id,
            "oldRating": self.old_rating,
            "newRating": self.new_rating,
            "change": self.change,
            "opponentElo": self.opponent_elo,
            "engagement": self.engagement,
            "timestamp": self.timestamp.isoformat(),
        }
