import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from trendscore.config import settings
from trendscore.database import Repository
from trendscore.errors import NotFoundError
from trendscore.models import (
    BatchItemError, BatchReport, Product, ProductScoreHistory, ProductScoreView, TrendSignal,
)
from trendscore.services.age_decay import decayed_score, update_peak
from trendscore.services.score_calculator import calculate_score, next_status, order_signals

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecalculationJob:
    """Recomputes scores, status and score history from each product's signals"""

    def __init__(
        self,
        repository: Repository,
        clock: Callable[[], datetime] = utcnow,
        flag_threshold: Optional[int] = None,
        history_retention_days: Optional[int] = None,
        sparkline_days: Optional[int] = None
    ):
        self.repository = repository
        self.clock = clock
        self.flag_threshold = flag_threshold if flag_threshold is not None else settings.flag_threshold
        self.history_retention_days = history_retention_days or settings.history_retention_days
        self.sparkline_days = sparkline_days or settings.sparkline_days

    def score_fields(self, product: Product, signals: List[TrendSignal]) -> dict:
        """
        Fields that change when ``product`` is rescored against ``signals``.

        Signals are scored oldest first. A product that was never stamped
        with a detection date takes the date of its earliest signal.
        """
        now = self.clock()
        ordered = order_signals(signals)

        first_detected = product.first_detected
        if first_detected is None and ordered:
            first_detected = ordered[0].detected_at

        breakdown = calculate_score(ordered)
        decay = decayed_score(breakdown.total, first_detected, now)

        fields = {
            'trend_score': breakdown.total,
            'base_score': breakdown.total,
            'current_score': decay.current_score,
            'days_trending': decay.days_trending,
            'peak_score': update_peak(decay.current_score, product.peak_score),
            'status': next_status(product.status, breakdown.total, self.flag_threshold),
            'first_detected': first_detected,
        }
        return {name: value for name, value in fields.items() if getattr(product, name) != value}

    def _recalculate(self, product_id: str) -> bool:
        """Rescore one product and snapshot its score; caller owns the transaction"""
        product = self.repository.get_product(product_id)
        if product is None:
            raise NotFoundError("product", product_id)

        changes = self.score_fields(product, self.repository.get_signals(product_id))
        if changes:
            changes['last_updated'] = self.clock()
            product = self.repository.update_product(product_id, changes)
            if 'status' in changes:
                logger.info(f"Product {product_id} moved to {product.status.value} (score {product.trend_score:g})")

        self.repository.add_score_history(ProductScoreHistory(
            product_id=product_id,
            current_score=product.current_score,
            base_score=product.base_score,
            recorded_at=self.clock()
        ))
        return bool(changes)

    def recalculate_product(self, product_id: str) -> ProductScoreView:
        """On-demand recompute of a single product"""
        with self.repository.transaction():
            self._recalculate(product_id)
        return self.score_view(product_id)

    def run(self) -> BatchReport:
        """Walk every product that has signals; one failing product never stops the batch"""
        report = BatchReport(started_at=self.clock())
        product_ids = self.repository.list_product_ids_with_signals()

        logger.info("=" * 60)
        logger.info(f"Recalculating scores for {len(product_ids)} products")
        logger.info("=" * 60)

        for product_id in product_ids:
            try:
                with self.repository.transaction():
                    changed = self._recalculate(product_id)
                report.recalculated += 1
                if changed:
                    report.updated += 1
            except Exception as e:
                logger.error(f"Error recalculating product {product_id}: {e}")
                report.errors.append(BatchItemError(product_id=product_id, error=str(e)))

        cutoff = self.clock() - timedelta(days=self.history_retention_days)
        try:
            report.history_pruned = self.repository.prune_score_history(cutoff)
        except Exception as e:
            logger.error(f"Error pruning score history: {e}")
            report.errors.append(BatchItemError(error=f"History pruning failed: {e}"))

        report.finished_at = self.clock()
        logger.info(
            f"Recalculation complete: {report.updated} updated, "
            f"{report.recalculated} recalculated, {len(report.errors)} errors"
        )
        return report

    def sparkline(self, product_id: str, days: Optional[int] = None) -> List[float]:
        """Scores recorded in the last ``days`` days, oldest first, at most ``days`` points"""
        days = days or self.sparkline_days
        since = self.clock() - timedelta(days=days)
        history = self.repository.get_score_history(product_id, since=since)
        return [entry.current_score for entry in history[-days:]]

    def score_view(self, product_id: str) -> ProductScoreView:
        product = self.repository.get_product(product_id)
        if product is None:
            raise NotFoundError("product", product_id)

        return ProductScoreView(
            product_id=product_id,
            current_score=product.current_score,
            trend_score=product.trend_score,
            status=product.status,
            days_trending=product.days_trending,
            sparkline=self.sparkline(product_id)
        )
