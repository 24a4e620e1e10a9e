"""
Unit Tests for the Ledger Store

The AsyncSession is mocked; these tests check the SQL issued and how
results and database errors are mapped.

Run with: pytest tests/test_ledger_store.py -v
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.exc import IntegrityError, InternalError, OperationalError

from bankfeed.errors import PersistenceFailure
from bankfeed.categorization.engine import CategorizationEngine
from bankfeed.models import Connection, LedgerTransaction
from bankfeed.services.delta_reconciler import DeltaReconciler
from bankfeed.store.ledger_store import LedgerStore

from conftest import make_page, make_plaid_txn


def result_with_rows(rows):
    result = MagicMock()
    result.mappings.return_value.first.return_value = rows[0] if rows else None
    result.mappings.return_value.all.return_value = rows
    return result


def sql_of(call):
    return str(call.args[0])


CONNECTION_ROW = {
    "id": "conn-1",
    "item_id": "item-1",
    "institution_id": "ins_1",
    "institution_name": "First Bank",
    "access_token": "gAAAA-encrypted",
    "last_sync_cursor": "c1",
    "last_sync_at": None,
    "sync_status": "Success",
    "sync_error_message": None,
    "needs_reauth": False,
    "is_active": True,
    "updated_at": None,
}


class TestLedgerStore:
    """Test the SQL-backed ledger store."""

    @pytest.fixture
    def mock_db(self):
        db = AsyncMock()
        db.execute = AsyncMock()
        db.commit = AsyncMock()
        db.rollback = AsyncMock()
        return db

    @pytest.fixture
    def store(self, mock_db):
        return LedgerStore(mock_db)

    @pytest.mark.asyncio
    async def test_get_connection_maps_row(self, store, mock_db):
        mock_db.execute.return_value = result_with_rows([CONNECTION_ROW])

        connection = await store.get_connection("item-1")

        assert connection.id == "conn-1"
        assert connection.last_sync_cursor == "c1"
        assert mock_db.execute.call_args.args[1] == {"item_id": "item-1"}

    @pytest.mark.asyncio
    async def test_get_connection_missing(self, store, mock_db):
        mock_db.execute.return_value = result_with_rows([])

        assert await store.get_connection("item-x") is None

    @pytest.mark.asyncio
    async def test_claim_sync_is_conditional(self, store, mock_db):
        result = MagicMock()
        result.rowcount = 1
        mock_db.execute.return_value = result
        stale_before = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert await store.claim_sync("conn-1", stale_before) is True

        sql = sql_of(mock_db.execute.call_args)
        params = mock_db.execute.call_args.args[1]
        assert "sync_status <> :syncing" in sql
        assert "updated_at < :stale_before" in sql
        assert params["syncing"] == "Syncing"
        assert params["stale_before"] == stale_before
        mock_db.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_claim_sync_refused(self, store, mock_db):
        result = MagicMock()
        result.rowcount = 0
        mock_db.execute.return_value = result

        assert await store.claim_sync("conn-1", datetime.now(timezone.utc)) is False

    @pytest.mark.asyncio
    async def test_checkpoint_only_touches_cursor(self, store, mock_db):
        await store.checkpoint_cursor("conn-1", "c2")

        sql = sql_of(mock_db.execute.call_args)
        assert "last_sync_cursor = :cursor" in sql
        assert "sync_status" not in sql

    @pytest.mark.asyncio
    async def test_mark_sync_error_keeps_cursor(self, store, mock_db):
        await store.mark_sync_error("conn-1", "boom", needs_reauth=True)

        sql = sql_of(mock_db.execute.call_args)
        params = mock_db.execute.call_args.args[1]
        assert "last_sync_cursor" not in sql
        assert params["status"] == "Error"
        assert params["needs_reauth"] is True

    @pytest.mark.asyncio
    async def test_patch_updates_only_given_columns(self, store, mock_db):
        await store.patch_transaction("txn-1", {"status": "Removed"})

        sql = sql_of(mock_db.execute.call_args)
        params = mock_db.execute.call_args.args[1]
        assert "SET status = :status, updated_at = :now" in sql
        assert "amount" not in sql
        assert params["id"] == "txn-1"

    @pytest.mark.asyncio
    async def test_patch_rejects_unknown_columns(self, store):
        with pytest.raises(ValueError):
            await store.patch_transaction("txn-1", {"id": "other"})

    @pytest.mark.asyncio
    async def test_insert_commits_record(self, store, mock_db):
        txn = LedgerTransaction(
            external_transaction_id="tx-1",
            amount=Decimal("-25.00"),
            transaction_date=date(2024, 1, 15),
            description="Coffee Shop",
        )

        stored = await store.insert_transaction(txn)

        assert stored is txn
        assert txn.id is not None
        params = mock_db.execute.call_args.args[1]
        assert params["external_transaction_id"] == "tx-1"
        assert params["amount"] == Decimal("-25.00")
        assert params["status"] == "Pending"
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_insert_unique_violation_is_duplicate_delivery(self, store, mock_db):
        existing_row = {"id": "txn-1", "external_transaction_id": "tx-1", "amount": Decimal("-25.00"),
                        "transaction_date": date(2024, 1, 15), "description": "Coffee Shop"}
        mock_db.execute.side_effect = [
            IntegrityError("INSERT", {}, Exception("duplicate key")),
            result_with_rows([existing_row]),
        ]
        txn = LedgerTransaction("tx-1", Decimal("-25.00"), date(2024, 1, 15), "Coffee Shop")

        assert await store.insert_transaction(txn) is None
        mock_db.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_insert_other_failure_raises(self, store, mock_db):
        mock_db.execute.side_effect = OperationalError("INSERT", {}, Exception("connection lost"))
        txn = LedgerTransaction("tx-1", Decimal("-25.00"), date(2024, 1, 15), "Coffee Shop")

        with pytest.raises(PersistenceFailure):
            await store.insert_transaction(txn)

        mock_db.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_candidates_query(self, store, mock_db):
        mock_db.execute.return_value = result_with_rows([])

        await store.find_duplicate_candidates(date(2024, 1, 15), Decimal("-5.75"), "ext-1")

        sql = sql_of(mock_db.execute.call_args)
        params = mock_db.execute.call_args.args[1]
        assert "external_account_id IS NULL OR external_account_id <> :external_account_id" in sql
        assert params["removed"] == "Removed"
        assert params["amount"] == Decimal("-5.75")

    @pytest.mark.asyncio
    async def test_rule_hit_increment(self, store, mock_db):
        await store.increment_rule_hit("rule-1")

        sql = sql_of(mock_db.execute.call_args)
        assert "hit_count = hit_count + 1" in sql
        assert mock_db.execute.call_args.args[1]["id"] == "rule-1"

    @pytest.mark.asyncio
    async def test_list_active_rules_maps_rows(self, store, mock_db):
        mock_db.execute.return_value = result_with_rows([
            {"id": "r1", "match_field": "merchant", "match_type": "exact", "match_value": "Uber",
             "account_id": "a1", "category": "Travel", "memo": None, "priority": 5,
             "is_active": True, "hit_count": 3},
        ])

        rules = await store.list_active_rules()

        assert rules[0].match_field == "merchant"
        assert rules[0].priority == 5

    @pytest.mark.asyncio
    async def test_failed_read_rolls_back_session(self, store, mock_db):
        mock_db.execute.side_effect = OperationalError("SELECT", {}, Exception("canceling statement"))

        with pytest.raises(PersistenceFailure) as exc_info:
            await store.get_transaction_by_external_id("tx-1")

        assert isinstance(exc_info.value.cause, OperationalError)
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mark_sync_error_discards_interrupted_statement(self, store, mock_db):
        calls = []
        mock_db.rollback.side_effect = lambda: calls.append("rollback")
        mock_db.execute.side_effect = lambda query, params: calls.append("execute")

        await store.mark_sync_error("conn-1", "boom")

        assert calls == ["rollback", "execute"]


# ==================== ABORTED TRANSACTION BEHAVIOUR ====================

ABORTED = "current transaction is aborted, commands ignored until end of transaction block"


class AbortingSession:
    """
    AsyncSession stand-in that behaves like PostgreSQL after an error:
    once a statement fails, every execute and commit is rejected until
    rollback() is called.
    """

    def __init__(self, fail_when):
        self.fail_when = fail_when
        self.aborted = False
        self.failed = False
        self.rollbacks = 0
        self.inserted = {}

    async def execute(self, query, params=None):
        sql = str(query)
        params = params or {}
        if self.aborted:
            raise InternalError(sql, params, Exception(ABORTED))
        if not self.failed and self.fail_when(sql, params):
            self.failed = True
            self.aborted = True
            raise OperationalError(sql, params, Exception("canceling statement due to statement timeout"))
        return self._dispatch(sql, params)

    async def commit(self):
        if self.aborted:
            raise InternalError("COMMIT", {}, Exception(ABORTED))

    async def rollback(self):
        self.rollbacks += 1
        self.aborted = False

    def _dispatch(self, sql, params):
        if "INSERT INTO public.bank_transactions" in sql:
            self.inserted[params["external_transaction_id"]] = dict(params)
            return result_with_rows([])
        if "FROM public.plaid_accounts" in sql:
            return result_with_rows([{
                "id": "ext-1", "connection_id": "conn-1", "plaid_account_id": "plaid-acc-1",
                "account_name": "Checking", "account_type": "depository",
                "linked_account_id": "acct-checking", "is_active": True,
            }])
        if "external_transaction_id = :external_transaction_id" in sql:
            row = self.inserted.get(params["external_transaction_id"])
            return result_with_rows([row] if row else [])
        return result_with_rows([])


def is_duplicate_lookup(sql, params):
    return "transaction_date = :transaction_date" in sql


def is_lookup_of(external_transaction_id):
    def matches(sql, params):
        return (
            "external_transaction_id = :external_transaction_id" in sql
            and params.get("external_transaction_id") == external_transaction_id
        )
    return matches


class TestLedgerStoreAfterFailedStatement:
    """A failed statement must not poison the rest of the page."""

    @pytest.fixture
    def connection(self):
        return Connection(id="conn-1", item_id="item-1", institution_name="First Bank", access_token="token")

    @pytest.fixture
    def page(self):
        return make_page(added=[
            make_plaid_txn("tx-1", amount="1.00"),
            make_plaid_txn("tx-2", amount="2.00"),
            make_plaid_txn("tx-3", amount="3.00"),
        ])

    def reconciler_for(self, session, connection):
        return DeltaReconciler(LedgerStore(session), connection, CategorizationEngine())

    @pytest.mark.asyncio
    async def test_duplicate_lookup_failure_keeps_the_record(self, connection, page):
        session = AbortingSession(is_duplicate_lookup)

        counts = await self.reconciler_for(session, connection).reconcile_page(page)

        assert counts.added == 3
        assert set(session.inserted) == {"tx-1", "tx-2", "tx-3"}
        assert session.rollbacks == 1

    @pytest.mark.asyncio
    async def test_failed_lookup_only_loses_that_record(self, connection, page):
        session = AbortingSession(is_lookup_of("tx-1"))

        counts = await self.reconciler_for(session, connection).reconcile_page(page)

        assert counts.added == 2
        assert set(session.inserted) == {"tx-2", "tx-3"}
        assert session.aborted is False

    @pytest.mark.asyncio
    async def test_failed_lookup_on_modified_record(self, connection):
        session = AbortingSession(is_lookup_of("tx-9"))
        page = make_page(
            added=[make_plaid_txn("tx-1", amount="1.00")],
            modified=[make_plaid_txn("tx-9", amount="9.00")],
            removed=["tx-1"],
        )

        counts = await self.reconciler_for(session, connection).reconcile_page(page)

        assert counts.added == 1
        assert counts.modified == 0
        assert counts.removed == 1
