"""
Categorization Engine

Suggests a ledger account, category and memo for a transaction by asking
an ordered chain of strategies. Each strategy returns a result or None
("no opinion"); the first result wins.

    RuleStrategy       -> learned rule, confidence 100
    ClassifierStrategy -> AI classifier (only when one is configured)
    DefaultStrategy    -> Uncategorized, confidence 0
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from bankfeed.errors import ClassifierFailure
from bankfeed.models import (
    CategorizationResult,
    CategorizationRule,
    LedgerAccount,
    TransactionSummary,
)
from bankfeed.categorization.rules import find_matching_rule, result_from_rule
from bankfeed.categorization.classifier import TransactionClassifier

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
DEFAULT_MEMO_LENGTH = 100


@dataclass
class CategorizationContext:
    """What a page of transactions is categorized against (loaded once per page)."""
    rules: List[CategorizationRule] = field(default_factory=list)
    accounts: List[LedgerAccount] = field(default_factory=list)


def default_result(txn: TransactionSummary) -> CategorizationResult:
    return CategorizationResult(
        account_id=None,
        category=UNCATEGORIZED,
        memo=(txn.description or "")[:DEFAULT_MEMO_LENGTH],
        confidence=0,
        strategy="default",
    )


class RuleStrategy:
    name = "rule"

    def __init__(self, on_hit: Optional[Callable[[str], None]] = None):
        self.on_hit = on_hit

    async def categorize(
        self, txn: TransactionSummary, context: CategorizationContext
    ) -> Optional[CategorizationResult]:
        rule = find_matching_rule(context.rules, txn)
        if not rule:
            return None

        logger.debug(f"Rule {rule.id} matched '{txn.description}'")
        if self.on_hit:
            self.on_hit(rule.id)
        return result_from_rule(rule, txn)


class ClassifierStrategy:
    name = "classifier"

    def __init__(self, classifier: TransactionClassifier, max_accounts: int = 30):
        self.classifier = classifier
        self.max_accounts = max_accounts

    def candidate_accounts(self, accounts: List[LedgerAccount]) -> List[LedgerAccount]:
        return [a for a in accounts if a.is_categorizable][:self.max_accounts]

    async def categorize(
        self, txn: TransactionSummary, context: CategorizationContext
    ) -> Optional[CategorizationResult]:
        candidates = self.candidate_accounts(context.accounts)
        try:
            reply = await self.classifier.classify(txn, [a.name for a in candidates])
        except ClassifierFailure as e:
            logger.warning(f"Classifier failed for '{txn.description}': {e}")
            return default_result(txn)
        except Exception as e:
            logger.warning(f"Classifier raised unexpectedly for '{txn.description}': {e}")
            return default_result(txn)

        account_id = None
        if reply.account_name:
            by_name = {a.name: a.id for a in candidates}
            account_id = by_name.get(reply.account_name)
            if account_id is None:
                logger.info(f"Classifier suggested unknown account '{reply.account_name}', discarding it")

        return CategorizationResult(
            account_id=account_id,
            category=reply.category or txn.original_category or UNCATEGORIZED,
            memo=reply.memo or (txn.description or "")[:DEFAULT_MEMO_LENGTH],
            confidence=max(0, min(100, reply.confidence)),
            strategy=self.name,
        )


class DefaultStrategy:
    name = "default"

    async def categorize(
        self, txn: TransactionSummary, context: CategorizationContext
    ) -> Optional[CategorizationResult]:
        return default_result(txn)


class CategorizationEngine:
    """Runs the strategy chain for one transaction at a time."""

    def __init__(
        self,
        classifier: Optional[TransactionClassifier] = None,
        max_accounts: int = 30,
        on_rule_hit: Optional[Callable[[str], None]] = None,
    ):
        self.strategies = [RuleStrategy(on_hit=on_rule_hit)]
        if classifier is not None:
            self.strategies.append(ClassifierStrategy(classifier, max_accounts=max_accounts))
        self.strategies.append(DefaultStrategy())

    async def categorize(
        self, txn: TransactionSummary, context: CategorizationContext
    ) -> CategorizationResult:
        for strategy in self.strategies:
            result = await strategy.categorize(txn, context)
            if result is not None:
                return result
        return default_result(txn)
