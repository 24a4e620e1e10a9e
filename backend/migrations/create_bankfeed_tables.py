"""
Database Migration: Create Bank Feed Tables

Creates the connection, account, staged transaction and categorization rule
tables used by the bank feed sync engine.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database.connection import get_engine, init_db


SQL_STATEMENTS = [
    # Chart of accounts
    """
    CREATE TABLE IF NOT EXISTS public.accounts (
        id VARCHAR(36) PRIMARY KEY DEFAULT gen_random_uuid()::text,
        code VARCHAR(50) NOT NULL UNIQUE,
        name VARCHAR(255) NOT NULL,
        type VARCHAR(50) NOT NULL,
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Linked aggregator items
    """
    CREATE TABLE IF NOT EXISTS public.plaid_connections (
        id VARCHAR(36) PRIMARY KEY DEFAULT gen_random_uuid()::text,
        item_id VARCHAR(100) NOT NULL UNIQUE,
        institution_id VARCHAR(50),
        institution_name VARCHAR(255) NOT NULL,
        access_token TEXT NOT NULL,

        -- Sync state
        last_sync_cursor TEXT,
        last_sync_at TIMESTAMPTZ,
        sync_status VARCHAR(20) NOT NULL DEFAULT 'Pending',
        sync_error_message TEXT,
        needs_reauth BOOLEAN NOT NULL DEFAULT false,

        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT plaid_connections_status_check
            CHECK (sync_status IN ('Pending', 'Syncing', 'Success', 'Error'))
    )
    """,

    # Accounts under a connection
    """
    CREATE TABLE IF NOT EXISTS public.plaid_accounts (
        id VARCHAR(36) PRIMARY KEY DEFAULT gen_random_uuid()::text,
        connection_id VARCHAR(36) NOT NULL REFERENCES public.plaid_connections(id) ON DELETE CASCADE,
        plaid_account_id VARCHAR(100) NOT NULL UNIQUE,
        account_name VARCHAR(255) NOT NULL,
        official_name VARCHAR(255),
        account_type VARCHAR(50) NOT NULL,
        account_subtype VARCHAR(50),
        mask VARCHAR(10),
        linked_account_id VARCHAR(36) REFERENCES public.accounts(id),

        current_balance DECIMAL(18,2),
        available_balance DECIMAL(18,2),
        currency_code VARCHAR(10) DEFAULT 'USD',

        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Staged ledger transactions
    """
    CREATE TABLE IF NOT EXISTS public.bank_transactions (
        id VARCHAR(36) PRIMARY KEY DEFAULT gen_random_uuid()::text,
        external_transaction_id VARCHAR(100),

        -- Source tracking
        source VARCHAR(30) NOT NULL DEFAULT 'BANK_FEED',
        source_type VARCHAR(20) NOT NULL DEFAULT 'Bank',
        source_name VARCHAR(255),
        source_account_id VARCHAR(36) REFERENCES public.accounts(id),
        external_account_id VARCHAR(36) REFERENCES public.plaid_accounts(id),

        -- Core transaction data
        amount DECIMAL(18,2) NOT NULL,
        transaction_date DATE NOT NULL,
        post_date DATE,
        description TEXT NOT NULL,
        merchant VARCHAR(255),
        original_category VARCHAR(100),
        transaction_type VARCHAR(50),

        -- Suggestions
        suggested_account_id VARCHAR(36) REFERENCES public.accounts(id),
        suggested_category VARCHAR(100),
        suggested_memo TEXT,
        confidence_score INTEGER NOT NULL DEFAULT 0,

        -- Duplicate review
        is_potential_duplicate BOOLEAN NOT NULL DEFAULT false,
        duplicate_of_id VARCHAR(36) REFERENCES public.bank_transactions(id),

        status VARCHAR(20) NOT NULL DEFAULT 'Pending',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT bank_transactions_status_check
            CHECK (status IN ('Pending', 'Approved', 'Posted', 'Removed')),
        CONSTRAINT bank_transactions_source_type_check
            CHECK (source_type IN ('Bank', 'CreditCard')),
        CONSTRAINT bank_transactions_confidence_check
            CHECK (confidence_score BETWEEN 0 AND 100)
    )
    """,

    # Categorization rules
    """
    CREATE TABLE IF NOT EXISTS public.categorization_rules (
        id VARCHAR(36) PRIMARY KEY DEFAULT gen_random_uuid()::text,
        match_field VARCHAR(20) NOT NULL DEFAULT 'description',
        match_type VARCHAR(20) NOT NULL DEFAULT 'contains',
        match_value VARCHAR(255) NOT NULL,
        account_id VARCHAR(36) REFERENCES public.accounts(id),
        category VARCHAR(100),
        memo TEXT,
        priority INTEGER NOT NULL DEFAULT 100,
        is_active BOOLEAN NOT NULL DEFAULT true,
        hit_count INTEGER NOT NULL DEFAULT 0,
        last_hit_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Indexes for bank_transactions
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_bank_transactions_external_id
        ON public.bank_transactions(external_transaction_id)
        WHERE external_transaction_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS ix_bank_transactions_date_amount ON public.bank_transactions(transaction_date, amount)",
    "CREATE INDEX IF NOT EXISTS ix_bank_transactions_external_account ON public.bank_transactions(external_account_id)",
    "CREATE INDEX IF NOT EXISTS ix_bank_transactions_status ON public.bank_transactions(status)",

    # Indexes for connections, accounts and rules
    "CREATE INDEX IF NOT EXISTS ix_plaid_connections_active ON public.plaid_connections(is_active)",
    "CREATE INDEX IF NOT EXISTS ix_plaid_connections_sync_status ON public.plaid_connections(sync_status, is_active)",
    "CREATE INDEX IF NOT EXISTS ix_plaid_accounts_connection ON public.plaid_accounts(connection_id)",
    "CREATE INDEX IF NOT EXISTS ix_plaid_accounts_linked ON public.plaid_accounts(linked_account_id)",
    "CREATE INDEX IF NOT EXISTS ix_accounts_name ON public.accounts(name)",
    "CREATE INDEX IF NOT EXISTS ix_categorization_rules_active_priority ON public.categorization_rules(is_active, priority)",
]


async def create_tables():
    """Create the bank feed tables."""
    print("Creating bank feed tables...")

    engine = get_engine()
    async with engine.begin() as conn:
        for i, sql in enumerate(SQL_STATEMENTS):
            try:
                await conn.execute(text(sql))
                print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} executed")
            except Exception as e:
                if "already exists" in str(e).lower():
                    print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} (already exists)")
                else:
                    print(f"  ✗ Statement {i+1}/{len(SQL_STATEMENTS)} failed: {e}")
                    raise

        print("\n✅ Bank feed tables created successfully!")

    await init_db(engine)


if __name__ == "__main__":
    asyncio.run(create_tables())
