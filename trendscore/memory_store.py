"""In-process store used by tests and local runs without Supabase."""

import copy
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from trendscore.database import Repository
from trendscore.errors import NotFoundError
from trendscore.models import (
    Product, ProductContent, ProductScoreHistory, Review, TrendSignal,
)
from trendscore.services.age_decay import ensure_utc

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryRepository(Repository):
    """Dict-backed store; a transaction snapshots every table and restores it on failure"""

    def __init__(self):
        self.products: Dict[str, Product] = {}
        self.signals: Dict[str, TrendSignal] = {}
        self.reviews: Dict[str, Review] = {}
        self.contents: Dict[str, ProductContent] = {}
        self.history: Dict[str, ProductScoreHistory] = {}
        self._depth = 0

    def _tables(self) -> dict:
        return {
            'products': self.products,
            'signals': self.signals,
            'reviews': self.reviews,
            'contents': self.contents,
            'history': self.history,
        }

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRepository"]:
        snapshot = copy.deepcopy(self._tables()) if self._depth == 0 else None
        self._depth += 1
        try:
            yield self
        except Exception:
            if snapshot is not None:
                for name, rows in snapshot.items():
                    setattr(self, name, rows)
                logger.debug("Rolled back in-memory transaction")
            raise
        finally:
            self._depth -= 1

    # Products

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.products.get(product_id)

    def list_products(self) -> List[Product]:
        return list(self.products.values())

    def list_product_ids_with_signals(self) -> List[str]:
        return list(dict.fromkeys(s.product_id for s in self.signals.values()))

    def create_product(self, product: Product) -> Product:
        created = product.model_copy(update={'id': product.id or _new_id()})
        self.products[created.id] = created
        return created

    def update_product(self, product_id: str, fields: dict) -> Product:
        if product_id not in self.products:
            raise NotFoundError("product", product_id)
        updated = self.products[product_id].model_copy(update=fields)
        self.products[product_id] = updated
        return updated

    def delete_product(self, product_id: str) -> None:
        if self.products.pop(product_id, None) is None:
            raise NotFoundError("product", product_id)
        for table in (self.signals, self.reviews, self.contents, self.history):
            for row_id in [k for k, row in table.items() if row.product_id == product_id]:
                del table[row_id]

    # Signals

    def add_signal(self, signal: TrendSignal) -> TrendSignal:
        if signal.product_id not in self.products:
            raise NotFoundError("product", signal.product_id)
        created = signal.model_copy(update={'id': signal.id or _new_id()})
        self.signals[created.id] = created
        return created

    def get_signals(self, product_id: str) -> List[TrendSignal]:
        return [s for s in self.signals.values() if s.product_id == product_id]

    def reassign_signals(self, from_product_id: str, to_product_id: str) -> int:
        return self._reassign(self.signals, from_product_id, to_product_id)

    def _reassign(self, table: dict, from_product_id: str, to_product_id: str) -> int:
        moved = 0
        for row_id, row in table.items():
            if row.product_id == from_product_id:
                table[row_id] = row.model_copy(update={'product_id': to_product_id})
                moved += 1
        return moved

    # Reviews

    def add_review(self, review: Review) -> Review:
        if review.product_id not in self.products:
            raise NotFoundError("product", review.product_id)
        created = review.model_copy(update={'id': review.id or _new_id()})
        self.reviews[created.id] = created
        return created

    def get_reviews(self, product_id: str) -> List[Review]:
        return [r for r in self.reviews.values() if r.product_id == product_id]

    def reassign_reviews(self, from_product_id: str, to_product_id: str) -> int:
        return self._reassign(self.reviews, from_product_id, to_product_id)

    # Content

    def add_content(self, content: ProductContent) -> ProductContent:
        created = content.model_copy(update={'id': content.id or _new_id()})
        self.contents[created.id] = created
        return created

    def get_content(self, product_id: str) -> Optional[ProductContent]:
        return next((c for c in self.contents.values() if c.product_id == product_id), None)

    # Score history

    def add_score_history(self, entry: ProductScoreHistory) -> ProductScoreHistory:
        created = entry.model_copy(update={'id': entry.id or _new_id()})
        self.history[created.id] = created
        return created

    def get_score_history(
        self,
        product_id: str,
        since: Optional[datetime] = None
    ) -> List[ProductScoreHistory]:
        rows = [
            h for h in self.history.values()
            if h.product_id == product_id and (since is None or ensure_utc(h.recorded_at) >= ensure_utc(since))
        ]
        return sorted(rows, key=lambda h: ensure_utc(h.recorded_at))

    def prune_score_history(self, before: datetime) -> int:
        stale = [k for k, h in self.history.items() if ensure_utc(h.recorded_at) < ensure_utc(before)]
        for row_id in stale:
            del self.history[row_id]
        return len(stale)
