"""
Bank Feed Services

- account_resolver: feed account -> ledger account mapping
- delta_reconciler: applies a page of deltas to the ledger
- sync_coordinator: one connection's sync lifecycle
"""

from .account_resolver import AccountResolver, source_account_name, generate_account_code
from .delta_reconciler import DeltaReconciler, normalize_amount
from .sync_coordinator import SyncCoordinator, SyncEvent, log_sync_event

__all__ = [
    'AccountResolver',
    'source_account_name',
    'generate_account_code',
    'DeltaReconciler',
    'normalize_amount',
    'SyncCoordinator',
    'SyncEvent',
    'log_sync_event',
]
