"""HTTP surface, served from an in-memory store without starting the scheduler."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from trendscore.config import Settings
from trendscore.errors import StorageError
from trendscore.main import create_app
from trendscore.models import Product, ProductStatus

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.send_merge_failure = AsyncMock(return_value=True)
    notifier.send_recalculation_summary = AsyncMock(return_value=True)
    notifier.send_error_notification = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def config():
    return Settings(cron_secret="s3cret")


@pytest.fixture
def client(repo, clock, notifier, config):
    return TestClient(create_app(repository=repo, clock=clock, notifier=notifier, config=config))


def signal_payload(**overrides):
    payload = {
        'product_name': "CeraVe Moisturizing Cream",
        'brand': "CeraVe",
        'source': "amazon_movers",
        'value': 240,
        'metadata': {'sales_jump_percent': 240},
        'detected_at': NOW.isoformat(),
    }
    payload.update(overrides)
    return payload


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()['status'] == "healthy"


def test_status_before_first_run(client):
    assert client.get("/api/status").json()['last_run'] is None


class TestIngestion:

    def test_signal_creates_product(self, client, repo):
        response = client.post("/api/signals", json=signal_payload())

        assert response.status_code == 200
        product_id = response.json()['signal']['product_id']
        assert repo.get_product(product_id).name == "CeraVe Moisturizing Cream"

    def test_signal_with_rescore(self, client, repo):
        response = client.post("/api/signals?rescore=true", json=signal_payload())

        product_id = response.json()['signal']['product_id']
        assert repo.get_product(product_id).trend_score == 12

    def test_invalid_signal(self, client):
        response = client.post("/api/signals", json=signal_payload(source="tiktok"))

        assert response.status_code == 400
        assert response.json()['success'] is False

    def test_signal_for_unknown_product(self, client):
        response = client.post("/api/signals", json=signal_payload(product_id="missing"))
        assert response.status_code == 404

    def test_review(self, client, make_product):
        product = make_product()

        ok = client.post(f"/api/products/{product.id}/reviews", json={'rating': 5, 'content': "Holy grail"})
        bad = client.post(f"/api/products/{product.id}/reviews", json={'rating': 7})
        missing = client.post("/api/products/missing/reviews", json={'rating': 4})

        assert ok.status_code == 200
        assert ok.json()['review']['rating'] == 5
        assert bad.status_code == 400
        assert missing.status_code == 404


class TestTrendingList:

    @pytest.fixture(autouse=True)
    def catalog(self, repo):
        repo.create_product(Product(id="hot", name="Hot Toner", current_score=72, days_trending=2))
        repo.create_product(Product(
            id="rated", name="Rated Serum", current_score=68, days_trending=3, star_rating=5.0, review_count=100
        ))
        repo.create_product(Product(id="rising", name="Rising Balm", current_score=55, days_trending=1))
        repo.create_product(Product(id="old", name="Old Cleanser", current_score=21, days_trending=25))
        repo.create_product(Product(id="quiet", name="Quiet Mask", current_score=12, days_trending=3))

    def ids(self, response):
        return [p['id'] for p in response.json()['products']]

    def test_all_ranks_by_score_plus_review_adjustment(self, client):
        response = client.get("/api/products")

        assert response.status_code == 200
        assert self.ids(response) == ["rated", "hot", "rising"]
        assert response.json()['products'][0]['rank_score'] == 78
        assert response.json()['products'][0]['badge']['label'] == "Hot"

    def test_filters(self, client):
        assert self.ids(client.get("/api/products?filter=hot")) == ["hot"]
        assert self.ids(client.get("/api/products?filter=rising")) == ["rated", "rising"]
        assert self.ids(client.get("/api/products?filter=recent")) == ["old"]

    def test_limit(self, client):
        assert len(client.get("/api/products?limit=1").json()['products']) == 1

    def test_unknown_filter(self, client):
        assert client.get("/api/products?filter=viral").status_code == 400


class TestScores:

    def test_recalculate_then_read_score(self, client, make_product, add_amazon, add_reddit):
        product = make_product()
        add_amazon(product.id, 240)
        add_reddit(product.id, 600)
        add_reddit(product.id, 350)

        recalculated = client.post(f"/api/products/{product.id}/recalculate")
        score = client.get(f"/api/products/{product.id}/score")
        sparkline = client.get(f"/api/products/{product.id}/sparkline")

        assert recalculated.status_code == 200
        assert recalculated.json()['trend_score'] == 42
        assert score.json()['status'] == "DRAFT"
        assert score.json()['sparkline'] == [42]
        assert sparkline.json() == {"scores": [42]}

    def test_unknown_product(self, client):
        assert client.get("/api/products/missing/score").status_code == 404
        assert client.post("/api/products/missing/recalculate").status_code == 404


class TestMerge:

    @pytest.fixture
    def pair(self, make_product, add_amazon, add_reddit):
        canonical = make_product("CeraVe Moisturizing Cream 16oz", brand="CeraVe")
        duplicate = make_product("CeraVe Moisturizing Cream", brand="CeraVe")
        add_amazon(canonical.id, 240)
        add_reddit(duplicate.id, 600)
        return canonical, duplicate

    def test_merge(self, client, repo, pair):
        canonical, duplicate = pair

        response = client.post(
            f"/api/products/{duplicate.id}/merge", json={'target_product_id': canonical.id}
        )

        assert response.status_code == 200
        assert response.json()['signals_transferred'] == 1
        assert repo.get_product(duplicate.id) is None

    def test_invalid_and_missing(self, client, pair):
        canonical, duplicate = pair

        assert client.post(f"/api/products/{duplicate.id}/merge", json={}).status_code == 400
        assert client.post(
            f"/api/products/{duplicate.id}/merge", json={'target_product_id': duplicate.id}
        ).status_code == 400
        assert client.post(
            "/api/products/missing/merge", json={'target_product_id': canonical.id}
        ).status_code == 404

    def test_failure_alerts_operator(self, client, repo, notifier, pair, monkeypatch):
        canonical, duplicate = pair

        def broken(product_id):
            raise StorageError("delete rejected")

        monkeypatch.setattr(repo, 'delete_product', broken)
        response = client.post(
            f"/api/products/{duplicate.id}/merge", json={'target_product_id': canonical.id}
        )

        assert response.status_code == 500
        assert response.json()['requires_attention'] is True
        notifier.send_merge_failure.assert_awaited_once()
        assert repo.get_product(duplicate.id) is not None


class TestJobs:

    def test_daily_update_requires_secret(self, client):
        assert client.post("/api/daily-update").status_code == 401
        assert client.post(
            "/api/daily-update", headers={'Authorization': "Bearer wrong"}
        ).status_code == 401

    def test_daily_update(self, client, make_product, add_amazon):
        add_amazon(make_product().id, 240)

        response = client.post("/api/daily-update", headers={'Authorization': "Bearer s3cret"})

        assert response.status_code == 200
        assert response.json()['updated'] == 1
        assert response.json()['errors'] == []

    def test_daily_update_store_failure(self, client, repo, monkeypatch):
        def broken():
            raise StorageError("connection reset")

        monkeypatch.setattr(repo, 'list_product_ids_with_signals', broken)

        response = client.post("/api/daily-update", headers={'Authorization': "Bearer s3cret"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "connection reset"}

    def test_match_duplicates(self, client, repo, make_product, add_amazon, add_reddit):
        canonical = make_product("CeraVe Moisturizing Cream 16oz", brand="CeraVe")
        duplicate = make_product("CeraVe Moisturizing Cream", brand="CeraVe")
        add_amazon(canonical.id, 240)
        add_reddit(duplicate.id, 600)

        response = client.post("/api/match-duplicates")

        assert response.status_code == 200
        assert response.json()['merged'] == 1
        assert repo.get_product(duplicate.id) is None
        assert repo.get_product(canonical.id).status == ProductStatus.DRAFT
