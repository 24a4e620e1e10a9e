"""
Aggregator Package

Plaid SDK client and the response schemas it validates into.
"""

from .plaid_client import PlaidClient, classify_plaid_error
from .schemas import (
    PlaidTransaction,
    RemovedTransaction,
    TransactionsSyncPage,
    PlaidAccount,
    PlaidBalance,
    AccountsResponse,
    ItemResponse,
    PlaidItem,
    PlaidItemError,
    PlaidErrorBody,
)

__all__ = [
    'PlaidClient',
    'classify_plaid_error',
    'PlaidTransaction',
    'RemovedTransaction',
    'TransactionsSyncPage',
    'PlaidAccount',
    'PlaidBalance',
    'AccountsResponse',
    'ItemResponse',
    'PlaidItem',
    'PlaidItemError',
    'PlaidErrorBody',
]
