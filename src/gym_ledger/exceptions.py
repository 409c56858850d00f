"""Error taxonomy for the sales and aggregation engine.

Business rule failures abort an operation before anything is written. Store
failures describe the transaction machinery. ``AggregateUpdateFailed`` is the
one error raised after a sale has committed and is reported to callers as a
warning rather than a failed sale.
"""

from __future__ import annotations

from typing import Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced document is unknown."""


class ProductNotFound(MissingReferenceError):
    """Raised when a sale references a product that does not exist."""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Unknown product id: {product_id}")
        self.product_id = product_id


class BuyerNotFound(MissingReferenceError):
    """A member buyer id was supplied but no user record exists.

    Never fails a sale; the coordinator attaches it to the result as a warning
    and awards no points.
    """

    def __init__(self, buyer_id: str) -> None:
        super().__init__(f"Unknown buyer id: {buyer_id}")
        self.buyer_id = buyer_id


class InsufficientStock(BusinessRuleViolation):
    """Raised when the requested quantity exceeds the product's stock."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class StoreError(Exception):
    """Base class for document store failures."""


class TransactionConflict(StoreError):
    """A document read by the transaction changed before commit."""


class TransactionAborted(StoreError):
    """The store gave up on a transaction after exhausting its retry budget."""

    def __init__(self, attempts: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Transaction aborted after {attempts} attempt(s)")
        self.attempts = attempts
        self.cause = cause


class TransactionOrderError(StoreError):
    """A transaction tried to read a document after it had started writing."""


class AggregateUpdateFailed(Exception):
    """The monthly aggregate could not be updated after a sale committed."""

    def __init__(self, year_month: str, amount: float, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to credit {amount} to monthly aggregate {year_month}: {cause}")
        self.year_month = year_month
        self.amount = amount
        self.cause = cause


class MalformedInput(ValueError):
    """A stored value could not be coerced into a usable number or date."""


__all__ = [
    "AggregateUpdateFailed",
    "BusinessRuleViolation",
    "BuyerNotFound",
    "InsufficientStock",
    "MalformedInput",
    "MissingReferenceError",
    "ProductNotFound",
    "StoreError",
    "TransactionAborted",
    "TransactionConflict",
    "TransactionOrderError",
]
