"""
Bank Feed Engine - Database Models

Ledger staging tables written by the bank-feed sync engine.

Tables:
- plaid_connections: Linked aggregator items (encrypted token, cursor, sync status)
- plaid_accounts: Accounts under a connection, optionally mapped to a ledger account
- accounts: Chart of accounts (read, plus auto-provisioned feed accounts)
- bank_transactions: Staged ledger transactions awaiting review
- categorization_rules: User-taught rules consumed by the categorization engine
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, Numeric
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class SyncStatus(str, PyEnum):
    """Connection sync lifecycle"""
    PENDING = "Pending"
    SYNCING = "Syncing"
    SUCCESS = "Success"
    ERROR = "Error"


class TransactionStatus(str, PyEnum):
    """Staged transaction lifecycle"""
    PENDING = "Pending"
    APPROVED = "Approved"
    POSTED = "Posted"
    REMOVED = "Removed"


class TransactionSource(str, PyEnum):
    """Channel a staged transaction entered the ledger through"""
    BANK_FEED = "BANK_FEED"
    STATEMENT_IMPORT = "STATEMENT_IMPORT"
    MANUAL = "MANUAL"


class SourceType(str, PyEnum):
    """Kind of account the money moved through"""
    BANK = "Bank"
    CREDIT_CARD = "CreditCard"


class LedgerAccountType(str, PyEnum):
    BANK = "Bank"
    CREDIT_CARD = "Credit Card"
    EXPENSE = "Expense"
    INCOME = "Income"


# Account types offered to the classifier as categorization targets
CATEGORIZABLE_ACCOUNT_TYPES = (LedgerAccountType.EXPENSE.value, LedgerAccountType.INCOME.value)


# ==================== DATABASE MODELS ====================

class PlaidConnectionDB(Base):
    """
    One linked aggregator item.

    The access token is stored Fernet-encrypted. The engine only reads the
    token and cursor and writes sync status, cursor and the re-auth flag.
    """
    __tablename__ = "plaid_connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    item_id = Column(String(100), nullable=False, unique=True)
    institution_id = Column(String(50), nullable=True)
    institution_name = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=False)

    # Sync state
    last_sync_cursor = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    sync_error_message = Column(Text, nullable=True)
    needs_reauth = Column(Boolean, nullable=False, default=False)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_plaid_connections_active', 'is_active'),
        Index('ix_plaid_connections_sync_status', 'sync_status', 'is_active'),
    )


class PlaidAccountDB(Base):
    """Account under a connection; linked_account_id is the explicit user mapping"""
    __tablename__ = "plaid_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(String(36), ForeignKey("plaid_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    plaid_account_id = Column(String(100), nullable=False, unique=True)
    account_name = Column(String(255), nullable=False)
    official_name = Column(String(255), nullable=True)
    account_type = Column(String(50), nullable=False)
    account_subtype = Column(String(50), nullable=True)
    mask = Column(String(10), nullable=True)
    linked_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True, index=True)

    current_balance = Column(Numeric(18, 2), nullable=True)
    available_balance = Column(Numeric(18, 2), nullable=True)
    currency_code = Column(String(10), nullable=True, default="USD")

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class LedgerAccountDB(Base):
    """Chart of accounts entry"""
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(255), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class BankTransactionDB(Base):
    """
    Staged ledger transaction.

    Rows are never deleted: an aggregator removal sets status to Removed.
    Amounts follow the ledger convention (negative = expense).
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    external_transaction_id = Column(String(100), nullable=True)

    # Source tracking
    source = Column(String(30), nullable=False, default=TransactionSource.BANK_FEED.value)
    source_type = Column(String(20), nullable=False, default=SourceType.BANK.value)
    source_name = Column(String(255), nullable=True)
    source_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True)
    external_account_id = Column(String(36), ForeignKey("plaid_accounts.id"), nullable=True)

    # Core transaction data
    amount = Column(Numeric(18, 2), nullable=False)
    transaction_date = Column(Date, nullable=False)
    post_date = Column(Date, nullable=True)
    description = Column(Text, nullable=False)
    merchant = Column(String(255), nullable=True)
    original_category = Column(String(100), nullable=True)
    transaction_type = Column(String(50), nullable=True)

    # Suggestions
    suggested_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True)
    suggested_category = Column(String(100), nullable=True)
    suggested_memo = Column(Text, nullable=True)
    confidence_score = Column(Integer, nullable=False, default=0)

    # Duplicate review
    is_potential_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of_id = Column(String(36), ForeignKey("bank_transactions.id"), nullable=True)

    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(
            'ux_bank_transactions_external_id', 'external_transaction_id',
            unique=True,
            postgresql_where=external_transaction_id.isnot(None),
        ),
        Index('ix_bank_transactions_date_amount', 'transaction_date', 'amount'),
        Index('ix_bank_transactions_external_account', 'external_account_id'),
    )


class CategorizationRuleDB(Base):
    """User-taught categorization rule (lower priority value wins)"""
    __tablename__ = "categorization_rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    match_field = Column(String(20), nullable=False, default="description")
    match_type = Column(String(20), nullable=False, default="contains")
    match_value = Column(String(255), nullable=False)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True)
    category = Column(String(100), nullable=True)
    memo = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=100)
    is_active = Column(Boolean, nullable=False, default=True)
    hit_count = Column(Integer, nullable=False, default=0)
    last_hit_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_categorization_rules_active_priority', 'is_active', 'priority'),
    )


__all__ = [
    'SyncStatus',
    'TransactionStatus',
    'TransactionSource',
    'SourceType',
    'LedgerAccountType',
    'CATEGORIZABLE_ACCOUNT_TYPES',
    'PlaidConnectionDB',
    'PlaidAccountDB',
    'LedgerAccountDB',
    'BankTransactionDB',
    'CategorizationRuleDB',
]
