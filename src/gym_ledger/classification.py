"""Payment classification and the category backfill migration.

Payment records are written by the payments desk, which historically left the
reporting category implicit. A payment is classified by, in order:

1. its explicit ``category`` field;
2. an unambiguous transaction-type tag;
3. a heuristic over the notes and the assignment identifier.

Each payment lands in exactly one category. The heuristic is kept for legacy
records only; :func:`backfill_payment_categories` persists the category so
later reports take the explicit path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import log
from .constants import Collection, PaymentCategory, PaymentTransactionType
from .data_manager import PaymentRecord, deserialize_payment
from .document_store import DocumentStore, Transaction


STAFF_NOTE_KEYWORDS = ("salario", "comisión", "bono", "personal")
STAFF_ASSIGNMENT_PREFIX = "staff-"
PRODUCT_ASSIGNMENT_PREFIX = "product-"

_TAG_CATEGORIES = {
    PaymentTransactionType.STAFF_PAYMENT.value: PaymentCategory.STAFF_EXPENSE,
    PaymentTransactionType.PRODUCT_PURCHASE.value: PaymentCategory.PRODUCT_EXPENSE,
    PaymentTransactionType.OTHER_EXPENSE.value: PaymentCategory.OTHER,
}

_INCOME_TAG_CATEGORIES = {
    PaymentTransactionType.CLASS.value: PaymentCategory.CLASS_INCOME,
    PaymentTransactionType.MEMBERSHIP.value: PaymentCategory.MEMBERSHIP_INCOME,
    PaymentTransactionType.PRODUCT.value: PaymentCategory.OTHER,
    PaymentTransactionType.OTHER.value: PaymentCategory.OTHER,
}


@dataclass(frozen=True)
class Classification:
    """Reporting category of a payment and how it was determined."""

    category: PaymentCategory
    heuristic: bool = False

    @property
    def is_expense_category(self) -> bool:
        return self.category in (PaymentCategory.STAFF_EXPENSE, PaymentCategory.PRODUCT_EXPENSE)


def _explicit_category(payment: PaymentRecord) -> Optional[PaymentCategory]:
    if not payment.category:
        return None
    try:
        return PaymentCategory(payment.category)
    except ValueError:
        log.debug("Ignoring unknown category '%s' on payment '%s'", payment.category, payment.payment_id)
        return None


def _looks_like_staff_payment(payment: PaymentRecord) -> bool:
    if payment.assignment_id.startswith(STAFF_ASSIGNMENT_PREFIX):
        return True
    notes = payment.notes.lower()
    return any(keyword in notes for keyword in STAFF_NOTE_KEYWORDS)


def classify_payment(payment: PaymentRecord) -> Classification:
    """Assign ``payment`` to exactly one :class:`PaymentCategory`.

    Staff detection wins over product detection, so a record matching both
    heuristics is never counted twice.
    """

    explicit = _explicit_category(payment)
    if explicit is not None:
        return Classification(explicit)

    tag = payment.transaction_type or ""
    if tag in _TAG_CATEGORIES:
        return Classification(_TAG_CATEGORIES[tag])

    if not payment.is_expense:
        if tag in _INCOME_TAG_CATEGORIES:
            return Classification(_INCOME_TAG_CATEGORIES[tag])
        return Classification(PaymentCategory.OTHER, heuristic=True)

    if _looks_like_staff_payment(payment):
        return Classification(PaymentCategory.STAFF_EXPENSE, heuristic=True)
    if tag == PaymentTransactionType.PRODUCT.value or payment.assignment_id.startswith(PRODUCT_ASSIGNMENT_PREFIX):
        return Classification(PaymentCategory.PRODUCT_EXPENSE, heuristic=True)
    return Classification(PaymentCategory.OTHER, heuristic=True)


async def backfill_payment_categories(store: DocumentStore) -> int:
    """Persist the computed category on every payment that lacks one.

    Each payment is updated in its own transaction, and a payment that gained
    a category concurrently is left untouched. Running the migration twice is
    harmless.

    Returns:
        int: Number of payments updated.
    """

    documents = await store.query(Collection.PAYMENTS, lambda doc: not doc.get("category"))
    updated = 0
    for document in documents:
        payment = deserialize_payment(document)
        classification = classify_payment(payment)

        async def _persist(tx: Transaction, payment_id: str = payment.payment_id) -> bool:
            current = await tx.get(Collection.PAYMENTS, payment_id)
            if current is None or current.get("category"):
                return False
            tx.update(
                Collection.PAYMENTS,
                payment_id,
                {
                    "category": classification.category.value,
                    "category_source": "heuristic" if classification.heuristic else "tag",
                },
            )
            return True

        if await store.run_transaction(_persist):
            updated += 1
            if classification.heuristic:
                log.debug(
                    "Payment '%s' classified heuristically as %s",
                    payment.payment_id,
                    classification.category.value,
                )

    log.info("Backfilled categories on %d of %d uncategorized payments", updated, len(documents))
    return updated


__all__ = [
    "Classification",
    "PRODUCT_ASSIGNMENT_PREFIX",
    "STAFF_ASSIGNMENT_PREFIX",
    "STAFF_NOTE_KEYWORDS",
    "backfill_payment_categories",
    "classify_payment",
]
