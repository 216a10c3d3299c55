from __future__ import annotations


class MatchmakingError(Exception):
    """Base class for caller-visible matchmaking failures."""


class ConflictError(MatchmakingError):
    """The user is already waiting, pending or in a room."""


class AlreadyQueuedError(ConflictError):
    def __init__(self, user_id: str, state: str) -> None:
        self.user_id = user_id
        self.state = state
        super().__init__(f"User {user_id} is already {state}")


class MatchNotFoundError(MatchmakingError):
    """Unknown match id, or the user is not a party to it."""

    def __init__(self, match_id: str, user_id: str | None = None) -> None:
        self.match_id = match_id
        self.user_id = user_id
        super().__init__(f"Match {match_id} not found or expired")


class NotInRoomError(MatchNotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__("", user_id)
        self.args = (f"User {user_id} is not in a room",)


class MatchExpiredError(MatchmakingError):
    """The handshake window closed before the call arrived."""

    def __init__(self, match_id: str) -> None:
        self.match_id = match_id
        super().__init__(f"Match {match_id} has expired")
