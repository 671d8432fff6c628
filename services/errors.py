"""
Import error taxonomy.

Only MissingColumnError / UndecodableInputError abort a whole import. Per-order
validation problems are recorded on the order itself (category INVALID) and
never raised.
"""
from typing import Optional


class OrderImportError(Exception):
    """Base class for batch-level import failures."""


class MissingColumnError(OrderImportError):
    """A required column could not be resolved from the header row."""

    def __init__(self, column: str, headers: Optional[list] = None):
        self.column = column
        self.headers = list(headers or [])
        found = ", ".join(self.headers[:10]) if self.headers else "none"
        super().__init__(f"Invalid CSV: Missing '{column}' column. Found headers: {found}")


class UndecodableInputError(OrderImportError):
    """Uploaded payload is not UTF-8 text."""


class AmbiguousRecoveryError(OrderImportError):
    """Manual approval could not infer a category from the order's tags."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(
            f"Cannot determine order type for {order_id}. Please edit the tags to include "
            "'won', 'lost', 'submitted', 'chargeback' or 'fraud' before marking as valid."
        )


class MergeConflictError(OrderImportError):
    """Persisted state changed underneath a reconcile; the batch must be retried."""


class OrderNotFoundError(OrderImportError):
    """No persisted record for (owner, order id)."""

    def __init__(self, owner_id: str, order_id: str):
        self.owner_id = owner_id
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")
