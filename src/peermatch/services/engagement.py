"""Engagement scoring from session telemetry.

The band tables below are consumed by reporting dashboards, so the
breakpoints are fixed step functions rather than interpolations.
"""
from __future__ import annotations

from peermatch.models import (
    DIFFICULTY_EASY,
    DIFFICULTY_HARD,
    DIFFICULTY_MEDIUM,
    UserSessionMetrics,
)

DIFFICULTY_MULTIPLIERS = {
    DIFFICULTY_EASY: 0.8,
    DIFFICULTY_MEDIUM: 1.0,
    DIFFICULTY_HARD: 1.3,
}

MAX_ENGAGEMENT = 100.0


def _voice_points(metrics: UserSessionMetrics, session_duration: int) -> float:
    if not metrics.voice_used:
        return 0.0
    ratio = metrics.voice_duration / session_duration if session_duration > 0 else 0.0
    if ratio > 0.7:
        bonus = 20.0
    elif ratio > 0.4:
        bonus = 15.0
    elif ratio > 0.2:
        bonus = 10.0
    else:
        bonus = 5.0
    return 10.0 + bonus


def _code_points(code_changes: int) -> float:
    if code_changes >= 50:
        return 30.0
    if code_changes >= 20:
        return 25.0
    if code_changes >= 10:
        return 20.0
    if code_changes >= 5:
        return 15.0
    if code_changes > 0:
        return 10.0
    return 0.0


def _duration_points(session_duration: int) -> float:
    # 10-45 minutes is the sweet spot
    if 600 <= session_duration <= 2700:
        return 30.0
    if 300 <= session_duration <= 3600:
        return 25.0
    if session_duration >= 180:
        return 20.0
    if session_duration >= 120:
        return 10.0
    return 0.0


def _message_points(messages: int) -> float:
    if messages >= 20:
        return 10.0
    if messages >= 10:
        return 7.0
    if messages >= 5:
        return 5.0
    if messages > 0:
        return 3.0
    return 0.0


def calculate_engagement_score(metrics: UserSessionMetrics, session_duration: int) -> float:
    """Raw 0-100 engagement score for one participant."""
    return (
        _voice_points(metrics, session_duration)
        + _code_points(metrics.code_changes)
        + _duration_points(session_duration)
        + _message_points(metrics.messages_exchanged)
    )


def get_difficulty_multiplier(difficulty: str) -> float:
    """Unknown difficulties count as medium so a rating is always computable."""
    return DIFFICULTY_MULTIPLIERS.get((difficulty or "").lower(), 1.0)


def calculate_adjusted_engagement(
    metrics: UserSessionMetrics, session_duration: int, difficulty: str
) -> float:
    score = calculate_engagement_score(metrics, session_duration)
    return min(score * get_difficulty_multiplier(difficulty), MAX_ENGAGEMENT)
