from .ledger_store import LedgerStore, PATCHABLE_TRANSACTION_COLUMNS, open_ledger_store

__all__ = ['LedgerStore', 'PATCHABLE_TRANSACTION_COLUMNS', 'open_ledger_store']
