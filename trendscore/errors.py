"""
Error taxonomy for the scoring and deduplication core.

- ValidationError: bad input, rejected before any state changes
- NotFoundError: a referenced product does not exist
- StorageError: the store failed while applying a change
- StorageIntegrityError: a failed change could not be rolled back;
  the catalog may hold a partial merge and needs an operator
"""

from typing import Optional


class TrendScoreError(Exception):
    """Base class for errors raised by the core"""


class ValidationError(TrendScoreError):
    """Input rejected before any state change"""


class NotFoundError(TrendScoreError):
    """Referenced record does not exist"""

    def __init__(self, entity: str, entity_id: Optional[str]):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class StorageError(TrendScoreError):
    """The store failed while applying a change"""


class StorageIntegrityError(StorageError):
    """A failed unit of work could not be fully rolled back"""
