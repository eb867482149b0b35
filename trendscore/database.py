from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional
import logging

from trendscore.config import Settings, settings
from trendscore.errors import StorageError, StorageIntegrityError
from trendscore.models import (
    Product, ProductContent, ProductScoreHistory, Review, TrendSignal,
)

logger = logging.getLogger(__name__)


class Repository(ABC):
    """Storage operations the scoring core depends on.

    Mutations made inside ``transaction()`` either all persist or are all
    rolled back. Signals are returned in insertion order.
    """

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]:
        ...

    @abstractmethod
    def list_products(self) -> List[Product]:
        ...

    @abstractmethod
    def list_product_ids_with_signals(self) -> List[str]:
        ...

    @abstractmethod
    def create_product(self, product: Product) -> Product:
        ...

    @abstractmethod
    def update_product(self, product_id: str, fields: dict) -> Product:
        ...

    @abstractmethod
    def delete_product(self, product_id: str) -> None:
        """Delete a product together with its signals, reviews, content and history"""

    @abstractmethod
    def add_signal(self, signal: TrendSignal) -> TrendSignal:
        ...

    @abstractmethod
    def get_signals(self, product_id: str) -> List[TrendSignal]:
        ...

    @abstractmethod
    def reassign_signals(self, from_product_id: str, to_product_id: str) -> int:
        ...

    @abstractmethod
    def add_review(self, review: Review) -> Review:
        ...

    @abstractmethod
    def get_reviews(self, product_id: str) -> List[Review]:
        ...

    @abstractmethod
    def reassign_reviews(self, from_product_id: str, to_product_id: str) -> int:
        ...

    @abstractmethod
    def add_content(self, content: ProductContent) -> ProductContent:
        ...

    @abstractmethod
    def get_content(self, product_id: str) -> Optional[ProductContent]:
        ...

    @abstractmethod
    def add_score_history(self, entry: ProductScoreHistory) -> ProductScoreHistory:
        ...

    @abstractmethod
    def get_score_history(
        self,
        product_id: str,
        since: Optional[datetime] = None
    ) -> List[ProductScoreHistory]:
        """History rows oldest first"""

    @abstractmethod
    def prune_score_history(self, before: datetime) -> int:
        ...

    @abstractmethod
    def transaction(self):
        ...


class SupabaseRepository(Repository):
    """Supabase-backed store.

    PostgREST cannot span a transaction across requests, so a unit of work
    records a compensating action for every mutation and replays them in
    reverse when the work fails. Foreign keys on the child tables are
    expected to be declared ``ON DELETE CASCADE``.
    """

    PRODUCTS = 'products'
    SIGNALS = 'trend_signals'
    REVIEWS = 'reviews'
    CONTENT = 'product_content'
    HISTORY = 'product_score_history'

    PAGE_SIZE = 1000

    def __init__(self, client=None, config: Settings = settings):
        if client is None:
            from supabase import create_client
            client = create_client(config.supabase_url, config.supabase_key)
        self.client = client
        self._undo: Optional[List[Callable[[], None]]] = None

    def init_tables(self):
        """Check the schema is reachable"""
        try:
            self.client.table(self.PRODUCTS).select("id").limit(1).execute()
            logger.info("Database tables already exist")
        except Exception as e:
            logger.warning(f"Tables might not exist: {e}")

    # Unit of work

    def _record(self, undo: Callable[[], None]):
        if self._undo is not None:
            self._undo.append(undo)

    @contextmanager
    def transaction(self) -> Iterator["SupabaseRepository"]:
        if self._undo is not None:
            # Nested units of work join the outer one
            yield self
            return

        self._undo = []
        try:
            yield self
        except Exception as error:
            undo_log, self._undo = self._undo, None
            self._compensate(undo_log, error)
            raise
        else:
            self._undo = None

    def _compensate(self, undo_log: List[Callable[[], None]], error: Exception):
        logger.warning(f"Rolling back {len(undo_log)} change(s) after: {error}")
        failures = 0
        for undo in reversed(undo_log):
            try:
                undo()
            except Exception as e:
                failures += 1
                logger.error(f"Compensating action failed: {e}", exc_info=True)
        if failures:
            raise StorageIntegrityError(
                f"Rollback incomplete ({failures} of {len(undo_log)} compensating actions failed) "
                f"after: {error}"
            ) from error

    def _execute(self, description: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Error {description}: {e}")
            raise StorageError(f"Error {description}: {e}") from e

    # Products

    def get_product(self, product_id: str) -> Optional[Product]:
        response = self._execute(
            f"fetching product {product_id}",
            self.client.table(self.PRODUCTS).select("*").eq('id', product_id)
        )
        return Product(**response.data[0]) if response.data else None

    def _select_all(self, description: str, build_query: Callable[[], object]) -> List[dict]:
        """Read every row of a query page by page; PostgREST caps each response at max-rows"""
        rows: List[dict] = []
        while True:
            page = self._execute(
                f"{description} (from row {len(rows)})",
                build_query().range(len(rows), len(rows) + self.PAGE_SIZE - 1)
            ).data or []
            if not page:
                return rows
            rows.extend(page)

    def list_products(self) -> List[Product]:
        rows = self._select_all(
            "listing products",
            lambda: self.client.table(self.PRODUCTS).select("*").order('first_detected').order('id')
        )
        return [Product(**row) for row in rows]

    def list_product_ids_with_signals(self) -> List[str]:
        rows = self._select_all(
            "listing signal owners",
            lambda: self.client.table(self.SIGNALS).select("product_id").order('created_at').order('id')
        )
        return list(dict.fromkeys(row['product_id'] for row in rows))

    def create_product(self, product: Product) -> Product:
        data = product.model_dump(mode='json', exclude={'id'}, exclude_none=True)
        response = self._execute(
            f"inserting product {product.name}",
            self.client.table(self.PRODUCTS).insert(data)
        )
        created = Product(**response.data[0])
        logger.info(f"Inserted product: {created.name}")
        self._record(lambda: self._delete_rows(self.PRODUCTS, 'id', created.id))
        return created

    def update_product(self, product_id: str, fields: dict) -> Product:
        previous = self.get_product(product_id) if self._undo is not None else None
        data = Product.model_validate({'name': '', **fields}).model_dump(mode='json', include=set(fields))
        response = self._execute(
            f"updating product {product_id}",
            self.client.table(self.PRODUCTS).update(data).eq('id', product_id)
        )
        if previous is not None:
            restore = previous.model_dump(mode='json', include=set(fields))
            self._record(lambda: self.client.table(self.PRODUCTS).update(restore).eq('id', product_id).execute())
        logger.debug(f"Updated product ID: {product_id}")
        return Product(**response.data[0])

    def delete_product(self, product_id: str) -> None:
        snapshot = None
        if self._undo is not None:
            snapshot = {
                table: self._execute(
                    f"snapshotting {table} for {product_id}",
                    self.client.table(table).select("*").eq(column, product_id)
                ).data or []
                for table, column in (
                    (self.PRODUCTS, 'id'),
                    (self.SIGNALS, 'product_id'),
                    (self.REVIEWS, 'product_id'),
                    (self.CONTENT, 'product_id'),
                    (self.HISTORY, 'product_id'),
                )
            }
        self._delete_rows(self.PRODUCTS, 'id', product_id)
        logger.info(f"Deleted product ID: {product_id}")
        if snapshot is not None:
            self._record(lambda: self._restore_rows(snapshot))

    def _delete_rows(self, table: str, column: str, value):
        self._execute(
            f"deleting from {table} where {column}={value}",
            self.client.table(table).delete().eq(column, value)
        )

    def _restore_rows(self, snapshot: dict):
        # Parent row first so child foreign keys resolve
        for table in (self.PRODUCTS, self.SIGNALS, self.REVIEWS, self.CONTENT, self.HISTORY):
            rows = snapshot.get(table)
            if rows:
                self.client.table(table).insert(rows).execute()

    # Signals

    def add_signal(self, signal: TrendSignal) -> TrendSignal:
        data = signal.model_dump(mode='json', exclude={'id'}, exclude_none=True)
        response = self._execute(
            f"inserting {signal.source.value} signal for {signal.product_id}",
            self.client.table(self.SIGNALS).insert(data)
        )
        created = TrendSignal(**response.data[0])
        self._record(lambda: self._delete_rows(self.SIGNALS, 'id', created.id))
        return created

    def get_signals(self, product_id: str) -> List[TrendSignal]:
        response = self._execute(
            f"fetching signals for {product_id}",
            self.client.table(self.SIGNALS).select("*").eq('product_id', product_id).order('created_at')
        )
        return [TrendSignal(**row) for row in response.data or []]

    def reassign_signals(self, from_product_id: str, to_product_id: str) -> int:
        return self._reassign(self.SIGNALS, from_product_id, to_product_id)

    def _reassign(self, table: str, from_product_id: str, to_product_id: str) -> int:
        response = self._execute(
            f"reassigning {table} {from_product_id} -> {to_product_id}",
            self.client.table(table)
                .update({'product_id': to_product_id})
                .eq('product_id', from_product_id)
        )
        moved_ids = [row['id'] for row in response.data or []]
        if moved_ids:
            self._record(
                lambda: self.client.table(table)
                    .update({'product_id': from_product_id})
                    .in_('id', moved_ids)
                    .execute()
            )
        return len(moved_ids)

    # Reviews

    def add_review(self, review: Review) -> Review:
        data = review.model_dump(mode='json', exclude={'id'}, exclude_none=True)
        response = self._execute(
            f"inserting review for {review.product_id}",
            self.client.table(self.REVIEWS).insert(data)
        )
        created = Review(**response.data[0])
        self._record(lambda: self._delete_rows(self.REVIEWS, 'id', created.id))
        return created

    def get_reviews(self, product_id: str) -> List[Review]:
        response = self._execute(
            f"fetching reviews for {product_id}",
            self.client.table(self.REVIEWS).select("*").eq('product_id', product_id)
        )
        return [Review(**row) for row in response.data or []]

    def reassign_reviews(self, from_product_id: str, to_product_id: str) -> int:
        return self._reassign(self.REVIEWS, from_product_id, to_product_id)

    # Content

    def add_content(self, content: ProductContent) -> ProductContent:
        data = content.model_dump(mode='json', exclude={'id'}, exclude_none=True)
        response = self._execute(
            f"inserting content for {content.product_id}",
            self.client.table(self.CONTENT).insert(data)
        )
        created = ProductContent(**response.data[0])
        self._record(lambda: self._delete_rows(self.CONTENT, 'id', created.id))
        return created

    def get_content(self, product_id: str) -> Optional[ProductContent]:
        response = self._execute(
            f"fetching content for {product_id}",
            self.client.table(self.CONTENT).select("*").eq('product_id', product_id).limit(1)
        )
        return ProductContent(**response.data[0]) if response.data else None

    # Score history

    def add_score_history(self, entry: ProductScoreHistory) -> ProductScoreHistory:
        data = entry.model_dump(mode='json', exclude={'id'}, exclude_none=True)
        response = self._execute(
            f"inserting score history for {entry.product_id}",
            self.client.table(self.HISTORY).insert(data)
        )
        created = ProductScoreHistory(**response.data[0])
        self._record(lambda: self._delete_rows(self.HISTORY, 'id', created.id))
        return created

    def get_score_history(
        self,
        product_id: str,
        since: Optional[datetime] = None
    ) -> List[ProductScoreHistory]:
        query = self.client.table(self.HISTORY).select("*").eq('product_id', product_id)
        if since is not None:
            query = query.gte('recorded_at', since.isoformat())
        response = self._execute(
            f"fetching score history for {product_id}",
            query.order('recorded_at')
        )
        return [ProductScoreHistory(**row) for row in response.data or []]

    def prune_score_history(self, before: datetime) -> int:
        response = self._execute(
            "pruning score history",
            self.client.table(self.HISTORY).delete().lt('recorded_at', before.isoformat())
        )
        pruned = len(response.data) if response.data else 0
        logger.info(f"Pruned {pruned} score history rows older than {before.isoformat()}")
        return pruned


def create_repository(config: Settings = settings) -> Repository:
    """Build the store selected by configuration"""
    if config.storage_backend == "supabase":
        return SupabaseRepository(config=config)

    from trendscore.memory_store import InMemoryRepository
    logger.warning("Using in-memory store; data is lost on restart")
    return InMemoryRepository()
