import logging
from typing import Iterable, Optional

from trendscore.config import settings
from trendscore.database import Repository
from trendscore.errors import StorageError, StorageIntegrityError
from trendscore.models import MatchPassReport, MergeResult, Product, SignalSource
from trendscore.services.age_decay import ensure_utc
from trendscore.services.fuzzy_matcher import find_best_match
from trendscore.services.recalculation import RecalculationJob
from trendscore.services.score_calculator import next_status

logger = logging.getLogger(__name__)

SCORE_FIELDS = ('trend_score', 'current_score', 'peak_score', 'base_score')


def is_permanent_image(image_url: Optional[str], hosts: Optional[Iterable[str]] = None) -> bool:
    """True for images already copied to our own storage rather than hotlinked from a source"""
    if not image_url:
        return False
    hosts = settings.permanent_image_hosts if hosts is None else hosts
    return any(host in image_url for host in hosts)


def reconcile_fields(
    canonical: Product,
    duplicate: Product,
    permanent_image_hosts: Optional[Iterable[str]] = None
) -> dict:
    """Updates that fold the duplicate's data into the canonical record"""
    updates = {}

    # Longer name is usually the more complete one
    if len(duplicate.name) > len(canonical.name):
        updates['name'] = duplicate.name

    for field in ('amazon_url', 'price', 'brand'):
        if not getattr(canonical, field) and getattr(duplicate, field):
            updates[field] = getattr(duplicate, field)

    if duplicate.image_url:
        if not canonical.image_url:
            updates['image_url'] = duplicate.image_url
        elif (not is_permanent_image(canonical.image_url, permanent_image_hosts)
              and is_permanent_image(duplicate.image_url, permanent_image_hosts)):
            updates['image_url'] = duplicate.image_url

    for field in SCORE_FIELDS:
        if (getattr(duplicate, field) or 0) > (getattr(canonical, field) or 0):
            updates[field] = getattr(duplicate, field)

    if duplicate.first_detected and (
        not canonical.first_detected
        or ensure_utc(duplicate.first_detected) < ensure_utc(canonical.first_detected)
    ):
        updates['first_detected'] = duplicate.first_detected

    return updates


class MergeEngine:
    """Consolidates duplicate product records into their canonical product"""

    def __init__(
        self,
        repository: Repository,
        recalculation: Optional[RecalculationJob] = None,
        match_threshold: Optional[float] = None
    ):
        self.repository = repository
        self.recalculation = recalculation or RecalculationJob(repository)
        self.match_threshold = match_threshold if match_threshold is not None else settings.match_threshold

    def merge(self, duplicate_id: Optional[str], target_id: Optional[str]) -> MergeResult:
        """
        Merge ``duplicate_id`` into ``target_id``.

        Signals and reviews move to the target, fields are reconciled, the
        target is rescored and the duplicate is deleted, all in one unit of
        work. Invalid and not-found requests change nothing.
        """
        def result(status: str, message: str, **extra) -> MergeResult:
            return MergeResult(
                success=status == "merged",
                status=status,
                message=message,
                duplicate_id=duplicate_id,
                target_id=target_id,
                **extra
            )

        if not duplicate_id:
            return result("invalid", "Duplicate product ID is required")
        if not target_id:
            return result("invalid", "Target product ID is required")
        if duplicate_id == target_id:
            return result("invalid", "Cannot merge product with itself")

        try:
            duplicate = self.repository.get_product(duplicate_id)
            target = self.repository.get_product(target_id)
        except StorageError as e:
            return result("failed", f"Could not load products: {e}")

        if duplicate is None:
            return result("not_found", "Duplicate product not found")
        if target is None:
            return result("not_found", "Target product not found")

        try:
            with self.repository.transaction():
                signals_moved = self.repository.reassign_signals(duplicate_id, target_id)
                reviews_moved = self.repository.reassign_reviews(duplicate_id, target_id)

                updates = reconcile_fields(target, duplicate)
                canonical = self.repository.update_product(target_id, updates) if updates else target

                rescored = self.recalculation.score_fields(
                    canonical, self.repository.get_signals(target_id)
                )
                # A merge never lowers a score
                for field in SCORE_FIELDS:
                    if field in rescored and rescored[field] < getattr(canonical, field):
                        del rescored[field]
                # Status follows the trend score that is actually saved
                status = next_status(
                    canonical.status,
                    rescored.get('trend_score', canonical.trend_score),
                    self.recalculation.flag_threshold
                )
                rescored.pop('status', None)
                if status != canonical.status:
                    rescored['status'] = status
                if rescored:
                    self.repository.update_product(target_id, rescored)

                self.repository.delete_product(duplicate_id)
        except StorageIntegrityError as e:
            logger.error(f"Merge {duplicate_id} -> {target_id} left partial state: {e}", exc_info=True)
            return result(
                "failed",
                f"Merge failed and could not be fully rolled back: {e}",
                requires_attention=True
            )
        except Exception as e:
            logger.error(f"Merge {duplicate_id} -> {target_id} failed and was rolled back: {e}", exc_info=True)
            return result(
                "failed",
                f"Merge failed and was rolled back: {e}",
                requires_attention=True
            )

        logger.info(
            f"Merged '{duplicate.name}' into '{target.name}': "
            f"{signals_moved} signals, {reviews_moved} reviews transferred"
        )
        return result(
            "merged",
            f"Product merged successfully. {signals_moved} signals and {reviews_moved} reviews transferred.",
            signals_transferred=signals_moved,
            reviews_transferred=reviews_moved
        )

    def run_match_pass(self) -> MatchPassReport:
        """
        Fold discussion-only products into the marketplace product they describe.

        Products with Amazon signals but no Reddit signals are canonical; each
        takes its best-matching Reddit-only product (greedy, one at a time).
        """
        report = MatchPassReport()
        products = self.repository.list_products()

        sources = {
            p.id: {s.source for s in self.repository.get_signals(p.id)}
            for p in products
        }
        amazon_only = [
            p for p in products
            if SignalSource.AMAZON_MOVERS in sources[p.id] and SignalSource.REDDIT_SKINCARE not in sources[p.id]
        ]
        pool = [
            p for p in products
            if SignalSource.REDDIT_SKINCARE in sources[p.id] and SignalSource.AMAZON_MOVERS not in sources[p.id]
        ]

        logger.info(f"Matching {len(amazon_only)} Amazon products against {len(pool)} Reddit products")
        if not pool:
            return report

        for canonical in amazon_only:
            report.checked += 1
            match = find_best_match(canonical, pool, self.match_threshold)
            if match is None:
                continue

            logger.info(f"Matching '{canonical.name}' with '{match.name}' (similarity: {match.score:.0%})")
            outcome = self.merge(match.product_id, canonical.id)
            if outcome.success:
                report.merged += 1
                report.merges.append(outcome)
                pool = [p for p in pool if p.id != match.product_id]
            else:
                report.failures.append(outcome)

        logger.info(f"Match pass complete: {report.merged} merged, {len(report.failures)} failures")
        return report
