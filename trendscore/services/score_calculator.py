import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from trendscore.models import (
    Product, ProductStatus, Review, ScoreBreakdown, SignalSource, TrendSignal,
)
from trendscore.services.age_decay import ensure_utc

AMAZON_MAX = 70
AMAZON_BASELINE = 10
REDDIT_MAX = 30
FLAG_THRESHOLD = 60

MIN_REVIEWS_FOR_RELIABILITY = 10
REVIEW_ADJUSTMENT_MIN = -10
REVIEW_ADJUSTMENT_MAX = 15
RECENT_REVIEW_WINDOW = timedelta(days=30)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def order_signals(signals: Iterable[TrendSignal]) -> List[TrendSignal]:
    """Oldest first, ties broken by id so repeated runs see the same order"""
    return sorted(signals, key=lambda s: (ensure_utc(s.detected_at), s.id or ""))


def _sales_jump(signal: TrendSignal) -> float:
    if signal.value:
        return signal.value
    if signal.metadata is not None and getattr(signal.metadata, 'sales_jump_percent', None):
        return signal.metadata.sales_jump_percent
    return 0


def amazon_component(signals: Iterable[TrendSignal]) -> int:
    """
    Movers & Shakers component (0-70).

    Sales-rank jump % / 20, at least 10 for being listed at all. The first
    signal with a positive jump wins, so the result depends on the order
    the caller passes signals in; listings without a jump only keep the
    baseline and the scan continues.
    """
    score = 0
    for signal in signals:
        if signal.source != SignalSource.AMAZON_MOVERS:
            continue
        jump = _sales_jump(signal)
        if jump > 0:
            score = max(AMAZON_BASELINE, min(AMAZON_MAX, math.floor(jump / 20)))
            break
        score = AMAZON_BASELINE
    return score


def reddit_component(signals: Iterable[TrendSignal]) -> int:
    """
    Discussion component (0-30).

    - Top two posts: >500 upvotes = 20 points, 300-500 = 15 points
    - Volume: 3+ posts = +10, 2 posts = +5
    """
    reddit_signals = sorted(
        (s for s in signals if s.source == SignalSource.REDDIT_SKINCARE),
        key=lambda s: s.value or 0,
        reverse=True
    )

    score = 0
    high_engagement = 0
    for signal in reddit_signals:
        if high_engagement >= 2:
            break
        upvotes = signal.value or 0
        if upvotes > 500:
            score += 20
            high_engagement += 1
        elif upvotes >= 300:
            score += 15
            high_engagement += 1

    if len(reddit_signals) >= 3:
        score += 10
    elif len(reddit_signals) >= 2:
        score += 5

    return min(REDDIT_MAX, score)


def calculate_score(signals: Iterable[TrendSignal]) -> ScoreBreakdown:
    """Composite score (0-100) = Amazon (0-70) + Reddit (0-30); search trends carry no weight yet"""
    signals = list(signals)
    return ScoreBreakdown(
        amazon=amazon_component(signals),
        reddit=reddit_component(signals)
    )


def calculate_trend_score(signals: Iterable[TrendSignal]) -> int:
    return calculate_score(signals).total


def next_status(
    current: ProductStatus,
    score: float,
    threshold: int = FLAG_THRESHOLD
) -> ProductStatus:
    """Score-driven status transition. PUBLISHED is only ever set or cleared editorially."""
    if current == ProductStatus.PUBLISHED:
        return current
    if score >= threshold:
        return ProductStatus.FLAGGED
    if current == ProductStatus.FLAGGED:
        return ProductStatus.DRAFT
    return current


def _valid_rating(star_rating: Optional[float]) -> bool:
    return star_rating is not None and 0 < star_rating <= 5


def review_reliability(review_count: Optional[int]) -> float:
    if review_count and review_count >= MIN_REVIEWS_FOR_RELIABILITY:
        return 1.0
    if review_count and review_count > 0:
        return review_count / MIN_REVIEWS_FOR_RELIABILITY
    return 0.3


def review_rating_adjustment(
    star_rating: Optional[float],
    review_count: Optional[int]
) -> int:
    """
    Rating term of the review adjustment (-10 to +10)

    - 4.5-5.0 stars: +5 to +10
    - 4.0-4.4 stars: +2 to +5
    - 3.5-3.9 stars: 0
    - 3.0-3.4 stars: -3 to 0
    - below 3.0: -3 to -10
    """
    if not _valid_rating(star_rating):
        return 0

    if star_rating >= 4.5:
        adjustment = 5 + ((star_rating - 4.5) / 0.5) * 5
    elif star_rating >= 4.0:
        adjustment = 2 + ((star_rating - 4.0) / 0.4) * 3
    elif star_rating >= 3.5:
        adjustment = 0
    elif star_rating >= 3.0:
        adjustment = -3 + ((star_rating - 3.0) / 0.4) * 3
    else:
        adjustment = max(-10, -3 - ((3.0 - star_rating) / 2.0) * 7)

    return round_half_up(adjustment * review_reliability(review_count))


def review_count_trend_adjustment(
    review_count: Optional[int],
    recent_review_count: Optional[int] = None
) -> int:
    """Purchase-volume bonus (0 to +5), from the recent window when known"""
    if not review_count or review_count <= 0:
        return 0

    if recent_review_count and recent_review_count > 0:
        if recent_review_count >= 100:
            return 5
        elif recent_review_count >= 50:
            return 3
        elif recent_review_count >= 20:
            return 1
        return 0

    if review_count >= 10000:
        return 3
    elif review_count >= 5000:
        return 2
    elif review_count >= 1000:
        return 1
    return 0


def combined_review_adjustment(
    star_rating: Optional[float],
    review_count: Optional[int],
    recent_review_count: Optional[int] = None
) -> int:
    """Review bias used for ranking (-10 to +15); 0 when the rating is unusable"""
    if not _valid_rating(star_rating):
        return 0

    total = (
        review_rating_adjustment(star_rating, review_count)
        + review_count_trend_adjustment(review_count, recent_review_count)
    )
    return max(REVIEW_ADJUSTMENT_MIN, min(REVIEW_ADJUSTMENT_MAX, total))


def review_adjustment_for_product(
    product: Product,
    reviews: Optional[List[Review]] = None,
    now: Optional[datetime] = None
) -> int:
    """Review adjustment from marketplace aggregates, falling back to ingested reviews"""
    star_rating = product.star_rating
    review_count = product.review_count
    recent_review_count = product.recent_review_count

    if star_rating is None and reviews:
        star_rating = sum(r.rating for r in reviews) / len(reviews)
        review_count = len(reviews)
        if now is not None:
            cutoff = ensure_utc(now) - RECENT_REVIEW_WINDOW
            recent_review_count = sum(1 for r in reviews if r.date and ensure_utc(r.date) >= cutoff)

    return combined_review_adjustment(star_rating, review_count, recent_review_count)
