"""Duplicate detection for txbot."""

import logging

from txbot.db.sqlite import TransactionStore
from txbot.models import Transaction, ValidatedTransaction

logger = logging.getLogger(__name__)

DUPLICATE_TOLERANCE = 0.05


def amounts_within_tolerance(existing: float, candidate: float, tolerance: float = DUPLICATE_TOLERANCE) -> bool:
    """Whether two amounts differ by at most `tolerance`, relative to the candidate."""
    if candidate <= 0:
        return False
    return abs(existing - candidate) / candidate <= tolerance


def is_near_match(
    existing: Transaction,
    user_id: str,
    candidate: ValidatedTransaction,
    tolerance: float = DUPLICATE_TOLERANCE,
) -> bool:
    """
    Check whether a stored transaction duplicates a candidate.

    Same owner, exact merchant and date, and an amount within the tolerance
    band.
    """
    return (
        existing.user_id == user_id
        and existing.merchant == candidate.merchant
        and existing.date == candidate.date
        and amounts_within_tolerance(existing.amount, candidate.amount, tolerance)
    )


class DuplicateResolver:
    """Finds stored transactions that a new candidate would duplicate."""

    def __init__(self, store: TransactionStore, tolerance: float = DUPLICATE_TOLERANCE, use_index: bool = True):
        self.store = store
        self.tolerance = tolerance
        self.use_index = use_index

    def uses_index(self) -> bool:
        """Index path only when it is enabled and the store actually has the index."""
        return self.use_index and self.store.has_merchant_date_index

    def find_duplicates(self, user_id: str, candidate: ValidatedTransaction) -> list[Transaction]:
        """
        Find the user's transactions that nearly match the candidate.

        The indexed lookup may return other users' rows; those are filtered
        out here so both lookup paths give the same answer.
        """
        if self.uses_index():
            rows = self.store.find_by_merchant_and_date(candidate.merchant, candidate.date)
        else:
            logger.warning("Merchant/date index unavailable, using scan fallback for duplicate check")
            rows = self.store.scan_by_merchant_and_date(candidate.merchant, candidate.date, user_id=user_id)

        matches = [row for row in rows if is_near_match(row, user_id, candidate, self.tolerance)]
        if matches:
            logger.info(
                f"Found {len(matches)} potential duplicate(s) for {candidate.merchant} on {candidate.date}"
            )
        return matches
