"""
Duplicate Detection Rules

Flags a bank-feed transaction that already exists in the ledger under a
different source identity (a statement import, a manual entry, or another
linked account reporting the same movement).

Primary Match Keys:
- transaction_date (exact)
- amount (exact, ledger sign)

Secondary Heuristic:
- description similarity: exact case-insensitive match, else word overlap
  |A ∩ B| / max(|A|, |B|) over words longer than 3 letters

A flagged transaction is still stored; it is only marked for review.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional, Set

from bankfeed.models import LedgerTransaction

logger = logging.getLogger(__name__)

_NON_LETTERS = re.compile(r"[^a-z]+")


@dataclass
class DuplicateMatch:
    """
    An existing ledger transaction the new one appears to repeat.
    """
    duplicate_of_id: str
    similarity: float
    existing_description: str


class DuplicateDetector:
    """
    Cross-source duplicate detection for staged bank transactions.
    """

    SIMILARITY_THRESHOLD = 0.5
    MIN_WORD_LENGTH = 4

    def tokenize(self, description: Optional[str]) -> Set[str]:
        normalized = _NON_LETTERS.sub(" ", (description or "").lower())
        return {word for word in normalized.split() if len(word) >= self.MIN_WORD_LENGTH}

    def description_similarity(self, a: Optional[str], b: Optional[str]) -> float:
        """
        Similarity of two descriptions between 0 and 1.

        Identical descriptions (ignoring case) score 1. Descriptions with
        no significant words score 0.
        """
        if a and b and a.strip().lower() == b.strip().lower():
            return 1.0

        words_a = self.tokenize(a)
        words_b = self.tokenize(b)
        if not words_a or not words_b:
            return 0.0

        return len(words_a & words_b) / max(len(words_a), len(words_b))

    def is_similar(self, a: Optional[str], b: Optional[str]) -> bool:
        return self.description_similarity(a, b) >= self.SIMILARITY_THRESHOLD

    async def find_duplicate(self, store, txn: LedgerTransaction) -> Optional[DuplicateMatch]:
        """
        Return the first existing transaction that looks like ``txn``.

        Lookup failures are logged and treated as "no duplicate".
        """
        try:
            candidates = await store.find_duplicate_candidates(
                txn.transaction_date, txn.amount, txn.external_account_id
            )
        except Exception as e:
            logger.warning(f"Duplicate lookup failed for {txn.external_transaction_id}: {e}")
            return None

        for candidate in candidates:
            if candidate.external_transaction_id and candidate.external_transaction_id == txn.external_transaction_id:
                continue
            similarity = self.description_similarity(txn.description, candidate.description)
            if similarity >= self.SIMILARITY_THRESHOLD:
                logger.info(
                    f"Potential duplicate: {txn.external_transaction_id} matches {candidate.id} "
                    f"(similarity {similarity:.2f})"
                )
                return DuplicateMatch(
                    duplicate_of_id=candidate.id,
                    similarity=similarity,
                    existing_description=candidate.description,
                )

        return None


# Module instance
duplicate_detector = DuplicateDetector()
