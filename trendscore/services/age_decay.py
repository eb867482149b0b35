"""
Age decay for trending products.

A product's display score (current_score) shrinks as it ages so the
catalog favours what is hot now over what was hot last month. The
undecayed composite stays on base_score and the best displayed score on
peak_score.
"""

import math
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

# Display thresholds shared with the trending-list consumers
HOT_THRESHOLD = 70
RISING_THRESHOLD = 50
DEFAULT_FILTER_THRESHOLD = 40
RECENT_DAYS = 7
HOMEPAGE_MAX_DAYS = 30


class DecayResult(BaseModel):
    current_score: int
    age_multiplier: float
    days_trending: int
    show_on_homepage: bool


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_trending(first_detected: Optional[datetime], now: datetime) -> int:
    """Whole days since first detection"""
    if first_detected is None:
        return 0
    elapsed = ensure_utc(now) - ensure_utc(first_detected)
    return max(0, elapsed.days)


def age_multiplier(days: int) -> float:
    """
    Decay curve:
    - Days 0-1: 1.0 (just detected)
    - Days 2-3: 0.95
    - Days 4-7: 0.85
    - Days 8-14: 0.7
    - Days 15-21: 0.5
    - Days 22-30: 0.3
    - Days 31+: 0 (off the homepage)
    """
    if days <= 1:
        return 1.0
    if days <= 3:
        return 0.95
    if days <= 7:
        return 0.85
    if days <= 14:
        return 0.7
    if days <= 21:
        return 0.5
    if days <= HOMEPAGE_MAX_DAYS:
        return 0.3
    return 0.0


def decayed_score(
    base_score: Optional[float],
    first_detected: Optional[datetime],
    now: datetime
) -> DecayResult:
    days = days_trending(first_detected, now)
    multiplier = age_multiplier(days)
    current = math.floor((base_score or 0) * multiplier + 0.5)

    return DecayResult(
        current_score=current,
        age_multiplier=multiplier,
        days_trending=days,
        show_on_homepage=days <= HOMEPAGE_MAX_DAYS and current >= DEFAULT_FILTER_THRESHOLD
    )


def update_peak(current_score: float, existing_peak: Optional[float]) -> float:
    if not existing_peak:
        return current_score
    return max(current_score, existing_peak)


def trend_bucket(score: Optional[float]) -> Optional[str]:
    score = score or 0
    if score >= HOT_THRESHOLD:
        return "hot"
    if score >= RISING_THRESHOLD:
        return "rising"
    if score >= DEFAULT_FILTER_THRESHOLD:
        return "all"
    return None


def matches_filter(current_score: Optional[float], days: int, filter_name: str) -> bool:
    """Trending-list filters: hot, rising, all (default) and recent"""
    score = current_score or 0
    if filter_name == "hot":
        return score >= HOT_THRESHOLD
    if filter_name == "rising":
        return RISING_THRESHOLD <= score < HOT_THRESHOLD
    if filter_name == "recent":
        return days > RECENT_DAYS
    if filter_name == "all":
        return score >= DEFAULT_FILTER_THRESHOLD
    raise ValueError(f"Unknown filter: {filter_name}")


def trend_badge(current_score: Optional[float]) -> dict:
    score = current_score or 0
    if score >= 80:
        return {'emoji': '🔥🔥🔥', 'label': 'Peak Viral', 'color': 'red'}
    if score >= 60:
        return {'emoji': '🔥🔥', 'label': 'Hot', 'color': 'orange'}
    if score >= 40:
        return {'emoji': '🔥', 'label': 'Rising', 'color': 'yellow'}
    return {'emoji': '📈', 'label': 'Watching', 'color': 'gray'}


def timeline_text(days: int) -> str:
    if days == 0:
        return "New today"
    if days == 1:
        return "Just detected"
    if days <= 7:
        return f"Trending for {days} days"
    if days <= 14:
        return f"Hot for {days} days"
    return f"Peaked {days} days ago"
