"""
Tests for the bank feed table definitions

Run with: pytest tests/test_schema.py -v
"""

from database import Base, BankTransactionDB, PlaidConnectionDB, CategorizationRuleDB
from migrations.create_bankfeed_tables import SQL_STATEMENTS


class TestSchema:
    """ORM models and the migration agree on the essentials."""

    def test_tables_registered(self):
        assert {
            "accounts", "plaid_connections", "plaid_accounts",
            "bank_transactions", "categorization_rules",
        } <= set(Base.metadata.tables)

    def test_external_id_unique_only_when_present(self):
        index = next(
            i for i in BankTransactionDB.__table__.indexes
            if i.name == "ux_bank_transactions_external_id"
        )

        assert index.unique is True
        assert index.dialect_options["postgresql"]["where"] is not None

    def test_connection_defaults(self):
        columns = PlaidConnectionDB.__table__.columns

        assert columns["sync_status"].default.arg == "Pending"
        assert columns["needs_reauth"].default.arg is False

    def test_rule_priority_default(self):
        assert CategorizationRuleDB.__table__.columns["priority"].default.arg == 100

    def test_migration_creates_every_table(self):
        sql = "\n".join(SQL_STATEMENTS)

        for table in ("accounts", "plaid_connections", "plaid_accounts", "bank_transactions", "categorization_rules"):
            assert f"CREATE TABLE IF NOT EXISTS public.{table}" in sql
        assert "WHERE external_transaction_id IS NOT NULL" in sql
