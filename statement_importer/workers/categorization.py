"""Consumer of category-suggestion work items.

Categorization itself is an external concern: a ``CategorySuggester`` decides the category and
this consumer only stores the suggestion on the imported transaction. Handling is idempotent per
transaction ID: a transaction that already carries a suggestion, or no longer exists because its
job was cancelled or re-parsed, is skipped.
"""

from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from statement_importer.core.db import Database, ImportedTransaction
from statement_importer.core.errors import InvariantError
from statement_importer.core.models import CategorizationWorkItem
from statement_importer.core.utils import get_logger
from statement_importer.workers.queue import QueuedItem

logger = get_logger("statement-importer.categorization")


class CategorySuggestion(BaseModel):
    """A suggested category for one transaction."""

    category_id: str
    confidence: float = Field(ge=0, le=1)


class CategorySuggester(Protocol):
    """Anything able to suggest a category for a transaction."""

    def suggest(self, item: CategorizationWorkItem) -> CategorySuggestion | None:
        """Return a suggestion, or None when there is nothing to suggest."""


class NullCategorySuggester:
    """Suggester used when no categorization service is configured."""

    def suggest(self, item: CategorizationWorkItem) -> CategorySuggestion | None:  # noqa: ARG002
        """Never suggest anything."""
        return None


class CategorizationConsumer:
    """Stores category suggestions on imported transactions."""

    def __init__(self, db: Database, suggester: CategorySuggester | None = None) -> None:
        """Initialize the consumer with a database and a suggester."""
        self.db = db
        self.suggester = suggester or NullCategorySuggester()

    def handle(self, item: QueuedItem) -> None:
        """Process one category-suggestion work item."""
        try:
            work = CategorizationWorkItem.model_validate(item.payload)
        except ValidationError as exc:
            msg = f"Malformed categorization work item {item.key}: {exc}"
            raise InvariantError(msg) from exc

        with self.db.session_scope() as session:
            txn = session.get(ImportedTransaction, work.transaction_id)
            if txn is None:
                logger.info(f"Transaction {work.transaction_id} no longer exists, skipping")
                return
            if txn.suggested_category_id is not None:
                return
            suggestion = self.suggester.suggest(work)
            if suggestion is None:
                return
            txn.suggested_category_id = suggestion.category_id
            txn.category_confidence = suggestion.confidence
            logger.info(f"Suggested category {suggestion.category_id} for transaction {work.transaction_id}")


def log_categorization_give_up(item: QueuedItem, exc: Exception) -> None:
    """Categorization failures never affect the import job; they are only logged."""
    logger.warning(f"No category suggestion for {item.key}: {exc}")
