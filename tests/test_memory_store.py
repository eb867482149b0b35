from datetime import datetime, timedelta, timezone

import pytest

from trendscore.errors import NotFoundError
from trendscore.memory_store import InMemoryRepository
from trendscore.models import Product, ProductContent, ProductScoreHistory, SignalSource, TrendSignal

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_create_assigns_id(repo):
    product = repo.create_product(Product(name="Snail Mucin Essence"))
    assert product.id
    assert repo.get_product(product.id) == product


def test_update_unknown_product(repo):
    with pytest.raises(NotFoundError, match="Product not found: missing"):
        repo.update_product("missing", {'trend_score': 10})


def test_signals_require_existing_product(repo):
    with pytest.raises(NotFoundError):
        repo.add_signal(TrendSignal(
            product_id="missing", source=SignalSource.AMAZON_MOVERS, value=100, detected_at=NOW
        ))


def test_signals_keep_insertion_order(repo, make_product, add_amazon):
    product = make_product()
    late = add_amazon(product.id, 500, days_ago=0)
    early = add_amazon(product.id, 100, days_ago=3)
    assert [s.id for s in repo.get_signals(product.id)] == [late.id, early.id]


def test_delete_cascades(repo, make_product, add_amazon, add_review):
    product = make_product()
    add_amazon(product.id, 240)
    add_review(product.id, 4)
    repo.add_content(ProductContent(product_id=product.id, slug="cerave-cream", body="..."))
    repo.add_score_history(ProductScoreHistory(product_id=product.id, current_score=12, recorded_at=NOW))

    repo.delete_product(product.id)

    assert repo.get_product(product.id) is None
    assert repo.get_signals(product.id) == []
    assert repo.get_reviews(product.id) == []
    assert repo.get_content(product.id) is None
    assert repo.get_score_history(product.id) == []
    assert repo.list_product_ids_with_signals() == []


def test_reassign_moves_rows(repo, make_product, add_reddit, add_review):
    source = make_product("Source")
    target = make_product("Target")
    add_reddit(source.id, 400)
    add_reddit(source.id, 100)
    add_review(source.id, 5)

    assert repo.reassign_signals(source.id, target.id) == 2
    assert repo.reassign_reviews(source.id, target.id) == 1
    assert repo.get_signals(source.id) == []
    assert len(repo.get_signals(target.id)) == 2


def test_score_history_filtered_and_sorted(repo, make_product):
    product = make_product()
    for days_ago in (1, 9, 3):
        repo.add_score_history(ProductScoreHistory(
            product_id=product.id, current_score=days_ago, recorded_at=NOW - timedelta(days=days_ago)
        ))

    history = repo.get_score_history(product.id, since=NOW - timedelta(days=7))
    assert [h.current_score for h in history] == [3, 1]


class TestTransaction:

    def test_failure_restores_every_table(self, repo, make_product, add_amazon):
        product = make_product()

        with pytest.raises(RuntimeError):
            with repo.transaction():
                repo.update_product(product.id, {'trend_score': 50})
                add_amazon(product.id, 240)
                repo.create_product(Product(name="Other"))
                raise RuntimeError("boom")

        assert repo.get_product(product.id).trend_score == 0
        assert repo.get_signals(product.id) == []
        assert len(repo.list_products()) == 1

    def test_nested_transaction_joins_outer(self, repo, make_product):
        product = make_product()

        with pytest.raises(RuntimeError):
            with repo.transaction():
                with repo.transaction():
                    repo.update_product(product.id, {'trend_score': 50})
                raise RuntimeError("boom")

        assert repo.get_product(product.id).trend_score == 0

    def test_success_keeps_changes(self, repo, make_product):
        product = make_product()
        with repo.transaction():
            repo.update_product(product.id, {'trend_score': 50})
        assert repo.get_product(product.id).trend_score == 50


def test_is_a_fresh_store():
    assert InMemoryRepository().list_products() == []
