"""
Categorization Package

Rule, classifier and default strategies for suggesting ledger accounts.
"""

from .rules import RuleMatchType, RuleMatchField, find_matching_rule, rule_matches
from .classifier import (
    TransactionClassifier,
    OpenAIClassifier,
    ClassifierReply,
    build_prompt,
    parse_reply,
)
from .engine import (
    CategorizationEngine,
    CategorizationContext,
    RuleStrategy,
    ClassifierStrategy,
    DefaultStrategy,
    default_result,
    UNCATEGORIZED,
)

__all__ = [
    'RuleMatchType',
    'RuleMatchField',
    'find_matching_rule',
    'rule_matches',
    'TransactionClassifier',
    'OpenAIClassifier',
    'ClassifierReply',
    'build_prompt',
    'parse_reply',
    'CategorizationEngine',
    'CategorizationContext',
    'RuleStrategy',
    'ClassifierStrategy',
    'DefaultStrategy',
    'default_result',
    'UNCATEGORIZED',
]
