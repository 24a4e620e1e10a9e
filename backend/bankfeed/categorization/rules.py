"""
Categorization Rules

User-taught rules matched against a transaction's merchant or description.
Rules are tried in ascending priority; the first match wins with full
confidence.
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from bankfeed.models import CategorizationRule, CategorizationResult, TransactionSummary

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 100


class RuleMatchField(str, Enum):
    DESCRIPTION = "description"
    MERCHANT = "merchant"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RuleMatchField":
        if (value or "").strip().lower() == cls.MERCHANT.value:
            return cls.MERCHANT
        return cls.DESCRIPTION


class RuleMatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "startswith"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RuleMatchType":
        """Stored match type; anything unrecognised matches as 'contains'."""
        normalized = (value or "").strip().lower().replace("_", "").replace("-", "")
        for member in cls:
            if member.value == normalized:
                return member
        return cls.CONTAINS

    def matches(self, field_value: str, match_value: str) -> bool:
        """Case-insensitive comparison for this match type."""
        if not match_value:
            return False
        return _MATCHERS[self](field_value.lower(), match_value.lower())


_MATCHERS: Dict[RuleMatchType, Callable[[str, str], bool]] = {
    RuleMatchType.EXACT: lambda field_value, match_value: field_value == match_value,
    RuleMatchType.CONTAINS: lambda field_value, match_value: match_value in field_value,
    RuleMatchType.STARTS_WITH: lambda field_value, match_value: field_value.startswith(match_value),
}


def rule_matches(rule: CategorizationRule, txn: TransactionSummary) -> bool:
    field = RuleMatchField.parse(rule.match_field)
    field_value = txn.merchant if field == RuleMatchField.MERCHANT else txn.description
    return RuleMatchType.parse(rule.match_type).matches(field_value or "", rule.match_value or "")


def find_matching_rule(
    rules: List[CategorizationRule],
    txn: TransactionSummary,
) -> Optional[CategorizationRule]:
    """First active rule, by ascending priority, that matches the transaction."""
    ordered = sorted((r for r in rules if r.is_active), key=lambda r: r.priority)
    for rule in ordered:
        if rule_matches(rule, txn):
            return rule
    return None


def result_from_rule(rule: CategorizationRule, txn: TransactionSummary) -> CategorizationResult:
    return CategorizationResult(
        account_id=rule.account_id,
        category=rule.category,
        memo=rule.memo or txn.description[:100],
        confidence=RULE_CONFIDENCE,
        strategy="rule",
        rule_id=rule.id,
    )
