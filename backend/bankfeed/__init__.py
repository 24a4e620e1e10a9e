"""
Bank Feed Engine

Pulls transaction deltas from Plaid, reconciles them into the ledger
staging table, flags cross-source duplicates and suggests ledger accounts.

Usage:
    from bankfeed import build_engine_from_settings

    engine = build_engine_from_settings()
    result = await engine.sync_connection(item_id)
    await engine.aclose()
"""

from .engine import BankFeedEngine, build_engine_from_settings
from .errors import (
    BankFeedError,
    ConnectionNotFound,
    ConnectionInactive,
    SyncAlreadyInProgress,
    SyncCancelled,
    CredentialError,
    AggregatorError,
    AggregatorUnavailable,
    AggregatorRejected,
    PaginationMutated,
    PersistenceFailure,
    ClassifierFailure,
)
from .models import SyncResult, BalanceUpdateResult

__all__ = [
    'BankFeedEngine',
    'build_engine_from_settings',
    'BankFeedError',
    'ConnectionNotFound',
    'ConnectionInactive',
    'SyncAlreadyInProgress',
    'SyncCancelled',
    'CredentialError',
    'AggregatorError',
    'AggregatorUnavailable',
    'AggregatorRejected',
    'PaginationMutated',
    'PersistenceFailure',
    'ClassifierFailure',
    'SyncResult',
    'BalanceUpdateResult',
]
