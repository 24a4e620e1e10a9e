from .connection import (
    get_engine, get_session_factory, get_session, build_engine, build_session_factory, init_db, Base
)

# Import bank feed models to ensure they are registered with Base
from .bankfeed_models import (
    PlaidConnectionDB, PlaidAccountDB, LedgerAccountDB, BankTransactionDB, CategorizationRuleDB,
    SyncStatus, TransactionStatus, TransactionSource, SourceType, LedgerAccountType,
    CATEGORIZABLE_ACCOUNT_TYPES,
)

__all__ = [
    'get_engine', 'get_session_factory', 'get_session', 'build_engine', 'build_session_factory',
    'init_db', 'Base',
    # Bank feed models
    'PlaidConnectionDB', 'PlaidAccountDB', 'LedgerAccountDB', 'BankTransactionDB',
    'CategorizationRuleDB',
    # Enums
    'SyncStatus', 'TransactionStatus', 'TransactionSource', 'SourceType', 'LedgerAccountType',
    'CATEGORIZABLE_ACCOUNT_TYPES',
]
