"""Shared fixtures: an in-memory store, a fixed clock and record factories."""

from datetime import datetime, timedelta, timezone

import pytest

from trendscore.memory_store import InMemoryRepository
from trendscore.models import Product, ProductStatus, Review, SignalSource, TrendSignal
from trendscore.services.recalculation import RecalculationJob

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def recalculation(repo, clock) -> RecalculationJob:
    return RecalculationJob(repo, clock=clock, flag_threshold=60, history_retention_days=30, sparkline_days=7)


@pytest.fixture
def make_product(repo):
    """Create a stored product; ``days_ago`` sets first_detected relative to NOW"""
    def factory(name="CeraVe Moisturizing Cream", days_ago=0, status=ProductStatus.DRAFT, **fields):
        fields.setdefault('first_detected', NOW - timedelta(days=days_ago))
        return repo.create_product(Product(name=name, status=status, **fields))
    return factory


@pytest.fixture
def add_amazon(repo):
    def factory(product_id, jump, days_ago=0):
        return repo.add_signal(TrendSignal(
            product_id=product_id,
            source=SignalSource.AMAZON_MOVERS,
            value=jump,
            metadata={'sales_jump_percent': jump},
            detected_at=NOW - timedelta(days=days_ago)
        ))
    return factory


@pytest.fixture
def add_reddit(repo):
    def factory(product_id, upvotes, days_ago=0):
        return repo.add_signal(TrendSignal(
            product_id=product_id,
            source=SignalSource.REDDIT_SKINCARE,
            value=upvotes,
            metadata={'upvotes': upvotes, 'subreddit': 'SkincareAddiction'},
            detected_at=NOW - timedelta(days=days_ago)
        ))
    return factory


@pytest.fixture
def add_review(repo):
    def factory(product_id, rating, days_ago=0):
        return repo.add_review(Review(
            product_id=product_id,
            rating=rating,
            content="Works well",
            date=NOW - timedelta(days=days_ago)
        ))
    return factory
