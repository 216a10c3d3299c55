from __future__ import annotations

import time

import jwt

from peermatch.config import settings


class RoomTokenIssuer:
    """Mints and verifies room-access JWTs scoped to one match and one user."""

    def __init__(self, secret: str | None = None, algorithm: str | None = None) -> None:
        self._secret = secret or settings.room_token_secret
        self._algorithm = algorithm or settings.room_token_algorithm

    def issue(self, match_id: str, user_id: str, lifetime_seconds: int, now: float | None = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "matchId": match_id,
            "userId": user_id,
            "iat": issued_at,
            "exp": issued_at + lifetime_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> dict:
        """Decode a token, raising ``jwt.InvalidTokenError`` if it is bad or expired."""
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            options={"require": ["exp", "matchId", "userId"]},
        )
