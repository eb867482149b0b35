from datetime import datetime, timedelta, timezone

import pytest

from trendscore.errors import NotFoundError
from trendscore.models import ProductScoreHistory, ProductStatus
from trendscore.services.recalculation import RecalculationJob

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestRecalculateProduct:

    def test_scores_worked_example(self, repo, recalculation, make_product, add_amazon, add_reddit):
        product = make_product()
        add_amazon(product.id, 240)
        add_reddit(product.id, 600)
        add_reddit(product.id, 350)

        view = recalculation.recalculate_product(product.id)

        assert view.trend_score == 42
        assert view.current_score == 42
        assert view.status == ProductStatus.DRAFT
        assert view.sparkline == [42]

        stored = repo.get_product(product.id)
        assert stored.base_score == 42
        assert stored.peak_score == 42
        assert stored.last_updated == NOW

    def test_crossing_threshold_flags_product(self, repo, recalculation, make_product, add_amazon, add_reddit):
        product = make_product()
        add_amazon(product.id, 1100)
        add_reddit(product.id, 120)
        assert recalculation.recalculate_product(product.id).trend_score == 55

        add_reddit(product.id, 80)
        view = recalculation.recalculate_product(product.id)

        assert view.trend_score == 60
        assert view.status == ProductStatus.FLAGGED

    def test_published_product_is_not_demoted(self, repo, recalculation, make_product, add_reddit):
        product = make_product(status=ProductStatus.PUBLISHED, trend_score=80, current_score=80)
        add_reddit(product.id, 50)

        view = recalculation.recalculate_product(product.id)

        assert view.trend_score == 0
        assert view.status == ProductStatus.PUBLISHED

    def test_decay_applies_to_current_score_only(self, repo, recalculation, make_product, add_amazon):
        product = make_product(days_ago=10)
        add_amazon(product.id, 1000, days_ago=10)

        recalculation.recalculate_product(product.id)

        stored = repo.get_product(product.id)
        assert stored.days_trending == 10
        assert stored.base_score == 50
        assert stored.current_score == 35

    def test_first_detected_backfilled_from_earliest_signal(self, repo, recalculation, make_product, add_amazon):
        product = make_product(first_detected=None)
        add_amazon(product.id, 240, days_ago=1)
        add_amazon(product.id, 240, days_ago=3)

        recalculation.recalculate_product(product.id)

        stored = repo.get_product(product.id)
        assert stored.first_detected == NOW - timedelta(days=3)
        assert stored.days_trending == 3

    def test_idempotent(self, repo, recalculation, make_product, add_amazon, add_reddit):
        product = make_product(days_ago=4)
        add_amazon(product.id, 1300)
        add_reddit(product.id, 700)

        first = recalculation.recalculate_product(product.id)
        second = recalculation.recalculate_product(product.id)

        assert first.current_score == second.current_score
        assert first.status == second.status
        assert len(repo.get_score_history(product.id)) == 2

    def test_unknown_product(self, recalculation):
        with pytest.raises(NotFoundError):
            recalculation.recalculate_product("missing")


class TestBatchRun:

    def test_counts_updates_and_writes_one_history_row_each(
        self, repo, recalculation, make_product, add_amazon, add_reddit
    ):
        a = make_product("CeraVe Moisturizing Cream")
        b = make_product("The Ordinary Niacinamide")
        make_product("No Signals Yet")
        add_amazon(a.id, 240)
        add_reddit(b.id, 600)

        report = recalculation.run()

        assert report.recalculated == 2
        assert report.updated == 2
        assert report.errors == []
        assert report.started_at == NOW
        assert len(repo.get_score_history(a.id)) == 1
        assert len(repo.get_score_history(b.id)) == 1

    def test_second_run_changes_nothing(self, repo, recalculation, make_product, add_amazon):
        product = make_product()
        add_amazon(product.id, 240)
        recalculation.run()

        report = recalculation.run()

        assert report.recalculated == 1
        assert report.updated == 0
        assert len(repo.get_score_history(product.id)) == 2

    def test_failing_product_does_not_stop_batch(
        self, repo, recalculation, make_product, add_amazon, monkeypatch
    ):
        broken = make_product("Broken Product")
        healthy = make_product("Healthy Product")
        add_amazon(broken.id, 240)
        add_amazon(healthy.id, 240)

        original = repo.get_signals

        def get_signals(product_id):
            if product_id == broken.id:
                raise RuntimeError("corrupt signal row")
            return original(product_id)

        monkeypatch.setattr(repo, 'get_signals', get_signals)
        report = recalculation.run()

        assert report.recalculated == 1
        assert len(report.errors) == 1
        assert report.errors[0].product_id == broken.id
        assert "corrupt signal row" in report.errors[0].error
        assert repo.get_product(healthy.id).trend_score == 12
        assert repo.get_product(broken.id).trend_score == 0

    def test_prunes_history_past_retention(self, repo, recalculation, make_product, add_amazon):
        product = make_product()
        add_amazon(product.id, 240)
        for days_ago in (45, 31, 10):
            repo.add_score_history(ProductScoreHistory(
                product_id=product.id, current_score=20, recorded_at=NOW - timedelta(days=days_ago)
            ))

        report = recalculation.run()

        assert report.history_pruned == 2
        assert len(repo.get_score_history(product.id)) == 2


class TestSparkline:

    def test_last_seven_days_oldest_first(self, repo, recalculation, make_product):
        product = make_product()
        for days_ago, score in ((9, 90), (8, 80), (6, 60), (4, 40), (2, 20), (0, 10)):
            repo.add_score_history(ProductScoreHistory(
                product_id=product.id, current_score=score, recorded_at=NOW - timedelta(days=days_ago)
            ))

        assert recalculation.sparkline(product.id) == [60, 40, 20, 10]

    def test_at_most_seven_points(self, repo, recalculation, make_product):
        product = make_product()
        for hours_ago in range(10):
            repo.add_score_history(ProductScoreHistory(
                product_id=product.id, current_score=hours_ago, recorded_at=NOW - timedelta(hours=hours_ago)
            ))

        assert recalculation.sparkline(product.id) == [6, 5, 4, 3, 2, 1, 0]

    def test_empty_history(self, recalculation, make_product):
        assert recalculation.sparkline(make_product().id) == []


def test_settings_supply_defaults(repo):
    job = RecalculationJob(repo)
    assert job.flag_threshold == 60
    assert job.history_retention_days == 30
    assert job.sparkline_days == 7
