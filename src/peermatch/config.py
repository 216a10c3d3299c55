from __future__ import annotations

import uuid

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Redis (shared coordination store)
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 20

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Room tokens
    room_token_secret: str = "change-me-in-production"
    room_token_algorithm: str = "HS256"

    # Matchmaking loop
    matchmaking_interval_seconds: float = 2.0
    stage1_wait_seconds: int = 100
    stage2_wait_seconds: int = 200
    stage3_wait_seconds: int = 300
    recent_partner_ttl_seconds: int = 24 * 3600

    # Handshake / pending matches
    handshake_ttl_seconds: int = 30
    handshake_grace_seconds: int = 30
    expiry_interval_seconds: float = 1.0

    # Rooms
    room_ttl_seconds: int = 2 * 3600

    # Elo rating system
    elo_default_rating: float = 1500.0
    elo_rating_floor: float = 500.0
    elo_rating_ceiling: float = 3000.0
    elo_k_new: int = 32
    elo_k_experienced: int = 24
    elo_new_player_sessions: int = 5
    elo_ttl_days: int = 90
    elo_update_max_retries: int = 5

    # Background loops inside the API process (disable when running arq workers)
    run_background_loops: bool = True

    # Instance id for log correlation
    instance_id: str = uuid.uuid4().hex[:8]

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def elo_ttl_seconds(self) -> int:
        return self.elo_ttl_days * 24 * 3600


settings = Settings()
