import logging
from typing import Optional, Union

import pydantic

from trendscore.database import Repository
from trendscore.errors import NotFoundError, ValidationError
from trendscore.models import Product, ProductStatus, Review, SignalInput, TrendSignal
from trendscore.services.age_decay import ensure_utc
from trendscore.services.recalculation import RecalculationJob

logger = logging.getLogger(__name__)


def _describe(error: pydantic.ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or 'record'}: {e['msg']}"
        for e in error.errors()
    )


class SignalIngestor:
    """Accepts scraper observations and appends them as trend signals"""

    def __init__(self, repository: Repository, recalculation: Optional[RecalculationJob] = None):
        self.repository = repository
        self.recalculation = recalculation or RecalculationJob(repository)

    def ingest(self, record: Union[SignalInput, dict], rescore: bool = False) -> TrendSignal:
        """
        Append one signal. A record without a product_id creates its product
        as a DRAFT first detected at the signal's timestamp.
        """
        if not isinstance(record, SignalInput):
            try:
                record = SignalInput.model_validate(record)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid signal: {_describe(e)}") from e

        with self.repository.transaction():
            if record.product_id:
                product = self.repository.get_product(record.product_id)
                if product is None:
                    raise NotFoundError("product", record.product_id)
                if product.first_detected is None or (
                    ensure_utc(record.detected_at) < ensure_utc(product.first_detected)
                ):
                    product = self.repository.update_product(
                        product.id, {'first_detected': record.detected_at}
                    )
            else:
                product = self.repository.create_product(Product(
                    name=record.product_name.strip(),
                    brand=record.brand,
                    category=record.category,
                    price=record.price,
                    image_url=record.image_url,
                    amazon_url=record.amazon_url,
                    status=ProductStatus.DRAFT,
                    first_detected=record.detected_at
                ))
                logger.info(f"New product discovered via {record.source.value}: {product.name}")

            signal = self.repository.add_signal(TrendSignal(
                product_id=product.id,
                source=record.source,
                value=record.value,
                metadata=record.metadata,
                detected_at=record.detected_at
            ))

        logger.debug(f"Stored {signal.source.value} signal ({signal.value:g}) for {product.id}")

        if rescore:
            self.recalculation.recalculate_product(product.id)
        return signal

    def ingest_review(self, product_id: str, review: Union[Review, dict]) -> Review:
        """Append a marketplace review; ratings outside 1-5 are rejected"""
        if not product_id:
            raise ValidationError("product_id is required")

        if not isinstance(review, Review):
            try:
                review = Review.model_validate({**review, 'product_id': product_id})
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid review: {_describe(e)}") from e
        elif review.product_id != product_id:
            raise ValidationError("review belongs to a different product")

        if self.repository.get_product(product_id) is None:
            raise NotFoundError("product", product_id)
        return self.repository.add_review(review)
