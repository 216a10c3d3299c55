from __future__ import annotations

import math

from peermatch.config import settings

# Maximum allowed |rating difference| per matchmaking stage; stage 4+ is open.
STAGE_ELO_LIMITS = {
    1: 100.0,
    2: 200.0,
    3: 300.0,
}


def get_k_factor(sessions_completed: int) -> int:
    """Determine K-factor from how many sessions the user has finished."""
    if sessions_completed < settings.elo_new_player_sessions:
        return settings.elo_k_new
    return settings.elo_k_experienced


def calculate_expected(rating_self: float, rating_opp: float) -> float:
    """Calculate expected score: E = 1/(1 + 10^((R_opp - R_self)/400))."""
    return 1.0 / (1.0 + math.pow(10.0, (rating_opp - rating_self) / 400.0))


def calculate_new_rating(
    rating: float,
    opponent_rating: float,
    adjusted_engagement: float,
    sessions_completed: int,
) -> float:
    """Calculate a new rating using engagement (0-100) as the actual score.

    The engagement term is normalised to [0, 1] and the result is clamped to
    the configured floor and ceiling.
    """
    k = get_k_factor(sessions_completed)
    expected = calculate_expected(rating, opponent_rating)
    actual = min(max(adjusted_engagement / 100.0, 0.0), 1.0)

    new_rating = rating + k * (actual - expected)
    return min(max(new_rating, settings.elo_rating_floor), settings.elo_rating_ceiling)


def check_elo_compatibility(elo_a: float, elo_b: float, stage: int) -> bool:
    """Whether two ratings are close enough to pair at the given stage."""
    limit = STAGE_ELO_LIMITS.get(stage)
    if limit is None:
        return True
    return abs(elo_a - elo_b) <= limit
